"""
Tests for data patterns and the pattern registry.
"""
import json

import pytest
import yaml

from dlp.errors import (
    InvalidPatternError,
    InvalidRegexError,
    PatternInUseError,
    UnknownPatternError,
)
from dlp.patterns import (
    DataPattern,
    PatternRegistry,
    domain_valid,
    load_standard_patterns,
    luhn_valid,
)
from dlp.policies import DLPPolicy, PolicyRegistry


@pytest.fixture
def registry():
    return PatternRegistry(load_standard_patterns())


def employee_id_pattern(**overrides):
    data = {
        'id': 'employee-id',
        'name': 'Employee ID',
        'data_type': 'employee_id',
        'regex': r'\bEMP-\d{6}\b',
        'confidence_floor': 0.7,
    }
    data.update(overrides)
    return DataPattern.from_dict(data)


class TestValidators:

    @pytest.mark.parametrize('number', ['4111-1111-1111-1111', '5500 0000 0000 0004', '4012888888881881'])
    def test_luhn_accepts_valid_numbers(self, number):
        assert luhn_valid(number)

    @pytest.mark.parametrize('number', ['4111-1111-1111-1112', '1234 5678 9012 3456', '7'])
    def test_luhn_rejects_invalid_numbers(self, number):
        assert not luhn_valid(number)

    def test_domain_validation(self):
        assert domain_valid('jane.doe@corp-mail.com')
        assert not domain_valid('jane@localhost')
        assert not domain_valid('jane@corp..com')
        assert not domain_valid('jane@corp.c0m')
        assert not domain_valid('no-at-sign')


class TestDataPattern:

    def test_compile_attaches_regexes(self):
        pattern = employee_id_pattern(false_positive_patterns=[r'EMP-000000']).compile()
        assert pattern.compiled.search('badge EMP-123456')
        assert len(pattern.compiled_false_positives) == 1

    def test_invalid_regex_raises(self):
        with pytest.raises(InvalidRegexError) as exc_info:
            employee_id_pattern(regex=r'EMP-(\d+').compile()
        assert exc_info.value.pattern_id == 'employee-id'

    def test_invalid_false_positive_regex_raises(self):
        with pytest.raises(InvalidRegexError):
            employee_id_pattern(false_positive_patterns=['[unclosed']).compile()

    @pytest.mark.parametrize('floor', [0.0, -0.1, 1.5])
    def test_confidence_floor_range(self, floor):
        with pytest.raises(InvalidPatternError):
            employee_id_pattern(confidence_floor=floor).compile()

    def test_unknown_validator(self):
        with pytest.raises(InvalidPatternError):
            employee_id_pattern(validators=['checksum']).compile()

    def test_from_dict_accepts_legacy_keys(self):
        pattern = DataPattern.from_dict({
            'id': 'legacy',
            'name': 'Legacy',
            'data_type': 'custom',
            'regex_pattern': r'\d+',
            'confidence_threshold': 0.6,
        })
        assert pattern.regex == r'\d+'
        assert pattern.confidence_floor == 0.6

    def test_to_dict_round_trips_through_from_dict(self):
        pattern = load_standard_patterns()[1]
        assert DataPattern.from_dict(pattern.to_dict()) == pattern


class TestPatternRegistry:

    def test_standard_patterns_in_order(self, registry):
        assert [p.id for p in registry.list()] == [
            'ssn-pattern',
            'credit-card-pattern',
            'email-pattern',
            'confidential-pattern',
        ]

    def test_upsert_replaces_by_id(self, registry):
        registry.upsert(employee_id_pattern())
        registry.upsert(employee_id_pattern(name='Staff ID'))
        assert len(registry) == 5
        assert registry.get('employee-id').name == 'Staff ID'

    def test_invalid_upsert_leaves_registry_unchanged(self, registry):
        before = registry.snapshot()
        with pytest.raises(InvalidRegexError):
            registry.upsert(employee_id_pattern(regex='('))
        assert registry.snapshot() is before
        assert 'employee-id' not in registry

    def test_snapshot_is_not_affected_by_later_writes(self, registry):
        snapshot = registry.snapshot()
        registry.upsert(employee_id_pattern())
        assert 'employee-id' not in snapshot
        assert 'employee-id' in registry.snapshot()

    def test_get_unknown_pattern(self, registry):
        with pytest.raises(UnknownPatternError):
            registry.get('missing')
        with pytest.raises(KeyError):
            registry.get('missing')

    def test_list_by_data_type(self, registry):
        assert [p.id for p in registry.list_by_data_type('ssn')] == ['ssn-pattern']

    def test_remove_unused_pattern(self, registry):
        registry.upsert(employee_id_pattern())
        removed = registry.remove('employee-id')
        assert removed.id == 'employee-id'
        assert 'employee-id' not in registry

    def test_remove_pattern_referenced_by_enabled_policy(self, registry):
        policies = PolicyRegistry(registry)
        registry.upsert(employee_id_pattern())
        policies.upsert(DLPPolicy(
            id='hr', name='HR', severity='low', action='warn',
            pattern_ids=['employee-id'], scope=['files'],
        ))
        with pytest.raises(PatternInUseError):
            registry.remove('employee-id')
        assert 'employee-id' in registry

    def test_load_yaml_file(self, registry, tmp_path):
        rules = tmp_path / 'patterns.yaml'
        rules.write_text(yaml.safe_dump({'patterns': [employee_id_pattern().to_dict()]}))

        loaded = registry.load_file(rules)

        assert [p.id for p in loaded] == ['employee-id']
        assert registry.get('employee-id').compiled is not None

    def test_load_json_list(self, registry, tmp_path):
        rules = tmp_path / 'patterns.json'
        rules.write_text(json.dumps([employee_id_pattern().to_dict()]))
        registry.load_file(rules)
        assert 'employee-id' in registry

"""
Tests for the scan engine.
"""
import threading
from email.message import EmailMessage

import pytest

from dlp.core import (
    DataContext,
    PolicyAction,
    RemediationStatus,
    ScanRequest,
    ScanStatus,
    Severity,
)
from dlp.engine import DLPEngine
from dlp.errors import (
    DuplicateScanError,
    IllegalRemediationTransitionError,
    PolicyInUseError,
    ScanCancelledError,
    UnknownPolicyError,
)

SSN_TEXT = 'Customer SSN 123-45-6789 is attached.'
CARD_TEXT = 'Payment by visa card 4111 1111 1111 1111 received.'


def write_email(directory, name, subject, body, sender='alice@corp.example', recipient='bob@partner.example'):
    message = EmailMessage()
    message['From'] = sender
    message['To'] = recipient
    message['Subject'] = subject
    message['Message-ID'] = f'<{name}@corp.example>'
    message.set_content(body)
    (directory / f'{name}.eml').write_bytes(bytes(message))


class TestClassifyAndApply:

    def test_ssn_in_email_body(self, engine):
        classification = engine.classify(SSN_TEXT)
        assert classification.data_type == 'ssn'
        assert classification.risk_level.value == 'critical'

        context = DataContext(source='email', location='outbound', sender='a@x', recipient='b@y')
        decision = engine.apply_policy('pii-protection', context, SSN_TEXT)
        assert decision.action == PolicyAction.BLOCK
        assert 'Data transmission blocked' in decision.recommendations

    def test_apply_unknown_policy(self, engine):
        with pytest.raises(UnknownPolicyError):
            engine.apply_policy('missing', DataContext(source='email', location=''))


class TestScan:

    def test_ssn_in_email_produces_one_violation(self, engine, static_producer, make_unit):
        engine.register_producer('email', static_producer([
            make_unit(SSN_TEXT, source='email', location='outbound', file_name=None,
                      sender='a@x', recipient='b@y'),
        ]))

        result = engine.scan(ScanRequest(scan_id='scan-a', source='email'))

        assert result.status == ScanStatus.COMPLETED
        assert result.total_violations == 1
        violation = result.violations[0]
        assert violation.policy_id == 'pii-protection'
        assert violation.policy_name == 'PII Protection Policy'
        assert violation.severity == Severity.HIGH
        assert violation.action_taken == PolicyAction.BLOCK
        assert violation.data_type == 'ssn'
        assert violation.sensitive_data_count == 1
        assert violation.source_location == 'a@x -> b@y'
        assert violation.remediation_status == RemediationStatus.PENDING
        assert '123-45-6789' not in violation.violation_details
        assert engine.violations.get(violation.id) is violation

    def test_email_scan_aggregation(self, engine, tmp_path):
        write_email(tmp_path, '1', 'Payroll', SSN_TEXT)
        write_email(tmp_path, '2', 'Invoice', CARD_TEXT)
        write_email(tmp_path, '3', 'Lunch', 'See you at noon.')

        result = engine.scan(ScanRequest(scan_id='scan-e', source='email', target_path=str(tmp_path)))

        assert result.status == ScanStatus.COMPLETED
        assert result.total_scanned == 3
        assert result.with_violations == 2
        assert result.total_violations == len(result.violations) == 2
        assert {v.policy_id for v in result.violations} == {'pii-protection', 'financial-data'}
        assert result.high_risk_violations == sum(
            1 for v in result.violations if v.severity in (Severity.HIGH, Severity.CRITICAL)
        )
        assert sum(result.violations_by_type.values()) == result.total_violations
        for data_type, count in result.violations_by_type.items():
            assert count == sum(1 for v in result.violations if v.data_type == data_type)
        assert all(v.context.source == 'email' for v in result.violations)
        assert engine.violations.by_scan('scan-e') == result.violations

    def test_file_system_scan(self, engine, tmp_path):
        (tmp_path / 'payroll.csv').write_text('name,ssn\nJane,SSN 123-45-6789\n')
        external = tmp_path / 'external'
        external.mkdir()
        (external / 'plan.txt').write_text('Confidential roadmap')
        (tmp_path / 'readme.md').write_text('Nothing sensitive')

        result = engine.scan(ScanRequest(scan_id='scan-fs', source='files', target_path=str(tmp_path)))

        assert result.status == ScanStatus.COMPLETED
        assert result.total_scanned == 3
        by_policy = {v.policy_id: v for v in result.violations}
        assert set(by_policy) == {'pii-protection', 'confidential-documents'}
        assert by_policy['pii-protection'].file_name == 'payroll.csv'
        assert by_policy['pii-protection'].source_location == str(tmp_path / 'payroll.csv')
        assert by_policy['confidential-documents'].action_taken == PolicyAction.WARN
        assert result.data_volume_scanned_bytes == sum(
            p.stat().st_size for p in (tmp_path / 'payroll.csv', external / 'plan.txt', tmp_path / 'readme.md')
        )

    def test_out_of_scope_policies_do_not_fire(self, engine, static_producer, make_unit):
        engine.register_producer('network', static_producer([
            make_unit(SSN_TEXT, source='network', location='10.0.0.5:443'),
        ]))
        result = engine.scan(ScanRequest(scan_id='scan-net', source='network'))

        assert result.total_scanned == 1
        assert result.total_violations == 0
        assert result.violations_by_type == {}

    def test_sensitive_data_count_covers_policy_patterns(self, engine, static_producer, make_unit):
        text = 'SSN 123-45-6789, SSN 987-65-4321 and visa card 4111-1111-1111-1111'
        engine.register_producer('file_system', static_producer([make_unit(text)]))

        result = engine.scan(ScanRequest(scan_id='scan-count', source='file_system'))

        by_policy = {v.policy_id: v for v in result.violations}
        assert by_policy['pii-protection'].sensitive_data_count == 2
        assert by_policy['pii-protection'].data_type == 'ssn'
        assert by_policy['financial-data'].sensitive_data_count == 1
        assert by_policy['financial-data'].data_type == 'credit_card'
        assert result.with_violations == 1
        assert result.high_risk_violations == 2

    def test_default_size_hint(self, engine, static_producer, make_unit):
        engine.register_producer('file_system', static_producer([
            make_unit('hello'),
            make_unit('world', size_hint=10),
        ]))
        result = engine.scan(ScanRequest(scan_id='scan-size', source='file_system'))
        assert result.data_volume_scanned_bytes == engine.settings.default_size_hint + 10

    def test_duplicate_scan_id(self, engine, static_producer):
        engine.register_producer('file_system', static_producer([]))
        engine.scan(ScanRequest(scan_id='scan-dup', source='file_system'))

        with pytest.raises(DuplicateScanError):
            engine.scan(ScanRequest(scan_id='scan-dup', source='file_system'))
        assert engine.status().processed_scans == 1

    def test_results_are_stored(self, engine, static_producer):
        engine.register_producer('file_system', static_producer([]))
        result = engine.scan(ScanRequest(scan_id='scan-1', source='file_system'))

        assert engine.get_scan_result('scan-1') == result
        assert engine.get_scan_result('scan-2') is None
        assert engine.list_scan_results() == [result]
        assert result.to_dict()['violations_by_type'] == '{}'


class TestCancellation:

    def test_cancel_after_first_violation(self, engine, static_producer, make_unit):
        engine.register_producer('file_system', static_producer([
            make_unit(SSN_TEXT, file_name='a.txt'),
            make_unit(SSN_TEXT, file_name='b.txt'),
            make_unit(SSN_TEXT, file_name='c.txt'),
        ]))
        seen = []

        def on_violation(violation):
            seen.append(violation)
            assert engine.cancel('scan-f')

        result = engine.scan(ScanRequest(scan_id='scan-f', source='file_system'), callback=on_violation)

        assert result.status == ScanStatus.CANCELLED
        assert result.violations == seen
        assert result.total_violations == 1
        assert result.total_scanned == 1
        assert engine.violations.count() == 1

    def test_callback_can_raise_cancel(self, engine, static_producer, make_unit):
        engine.register_producer('file_system', static_producer([
            make_unit(SSN_TEXT), make_unit(SSN_TEXT),
        ]))

        def on_violation(violation):
            raise ScanCancelledError('stop')

        result = engine.scan(ScanRequest(scan_id='scan-stop', source='file_system'), callback=on_violation)

        assert result.status == ScanStatus.CANCELLED
        assert result.total_violations == 1
        assert result.error is None

    def test_cancel_unknown_scan(self, engine):
        assert engine.cancel('nope') is False

    def test_policy_in_use_during_scan(self, engine, static_producer, make_unit):
        engine.register_producer('file_system', static_producer([make_unit(SSN_TEXT)]))
        errors = []

        def on_violation(violation):
            assert engine.active_scans() == ['scan-busy']
            try:
                engine.policies.remove('pii-protection')
            except PolicyInUseError as e:
                errors.append(e)

        engine.scan(ScanRequest(scan_id='scan-busy', source='file_system'), callback=on_violation)

        assert len(errors) == 1
        assert engine.active_scans() == []
        engine.policies.remove('pii-protection')
        assert 'pii-protection' not in engine.policies


class TestFailures:

    def test_producer_failure_keeps_partial_results(self, engine, static_producer, make_unit):
        engine.register_producer('file_system', static_producer(
            [make_unit(SSN_TEXT), make_unit(SSN_TEXT)], fail_after=1
        ))

        result = engine.scan(ScanRequest(scan_id='scan-fail', source='file_system'))

        assert result.status == ScanStatus.FAILED
        assert result.total_violations == 1
        assert 'backend connection lost' in result.error
        status = engine.status()
        assert status.status == 'degraded'
        assert status.last_error == result.error
        assert status.violations_recorded == 1

    def test_successful_scan_clears_last_error(self, engine, static_producer, make_unit):
        engine.register_producer('file_system', static_producer([make_unit(SSN_TEXT)], fail_after=0))
        engine.scan(ScanRequest(scan_id='scan-1', source='file_system'))
        assert engine.status().last_error

        engine.register_producer('file_system', static_producer([make_unit('fine')]))
        engine.scan(ScanRequest(scan_id='scan-2', source='file_system'))
        assert engine.status().last_error is None
        assert engine.status().operational

    def test_missing_target_fails_scan(self, engine, tmp_path):
        result = engine.scan(ScanRequest(
            scan_id='scan-missing', source='file_system', target_path=str(tmp_path / 'nope')
        ))
        assert result.status == ScanStatus.FAILED
        assert result.total_scanned == 0

    def test_empty_target_does_not_scan_working_directory(self, engine, tmp_path, monkeypatch):
        (tmp_path / 'payroll.csv').write_text('SSN 123-45-6789\n')
        monkeypatch.chdir(tmp_path)

        result = engine.scan(ScanRequest(scan_id='scan-cwd', source='network'))

        assert result.status == ScanStatus.FAILED
        assert result.total_scanned == 0
        assert result.violations == []
        assert 'No target path' in result.error


class TestStatus:

    def test_counters(self, engine, static_producer, make_unit):
        engine.register_producer('file_system', static_producer([
            make_unit('SSN 123-45-6789 and visa card 4111-1111-1111-1111'),
        ]))
        engine.scan(ScanRequest(scan_id='scan-1', source='file_system'))

        status = engine.status()
        assert status.processed_scans == 1
        assert status.processed_events == 1
        assert status.active_alerts == 2
        assert status.violations_recorded == 2
        assert status.uptime_seconds >= 0
        assert status.to_dict()['status'] == 'operational'

    def test_health_check(self, engine):
        health = engine.health_check()
        assert health['healthy'] is True
        assert health['patterns'] == 4
        assert health['policies'] == 3
        assert health['active_scans'] == 0

    def test_without_builtins(self):
        engine = DLPEngine(load_builtins=False)
        assert len(engine.patterns) == 0
        assert engine.classify(SSN_TEXT).elements == []


class TestRemediation:

    def test_update_remediation(self, engine, static_producer, make_unit):
        engine.register_producer('file_system', static_producer([make_unit(SSN_TEXT)]))
        violation = engine.scan(ScanRequest(scan_id='scan-r', source='file_system')).violations[0]

        updated = engine.update_remediation(violation.id, 'in_progress', assignee='analyst')
        assert updated.remediation_status == RemediationStatus.IN_PROGRESS

        with pytest.raises(IllegalRemediationTransitionError):
            engine.update_remediation(violation.id, 'pending')
        assert engine.violations.get(violation.id) is updated

    def test_scan_result_reflects_remediation(self, engine, static_producer, make_unit):
        engine.register_producer('file_system', static_producer([make_unit(SSN_TEXT)]))
        violation = engine.scan(ScanRequest(scan_id='scan-rr', source='file_system')).violations[0]

        engine.update_remediation(violation.id, 'in_progress', assignee='analyst')

        stored = engine.get_scan_result('scan-rr')
        assert stored.total_violations == 1
        assert stored.violations[0].remediation_status == RemediationStatus.IN_PROGRESS
        assert stored.violations[0].assignee == 'analyst'
        listed = engine.list_scan_results()[0]
        assert listed.violations[0].remediation_status == RemediationStatus.IN_PROGRESS


class TestSnapshots:

    def test_policy_removed_before_registration_is_not_used(self, engine, static_producer, make_unit):
        engine.register_producer('file_system', static_producer([make_unit(SSN_TEXT)]))
        results = []
        scan = threading.Thread(
            target=lambda: results.append(engine.scan(ScanRequest(scan_id='scan-race', source='file_system')))
        )

        with engine.policies.lock:
            scan.start()
            # The scan is blocked on the policies lock and has not registered yet
            scan.join(timeout=0.2)
            assert scan.is_alive()
            assert engine.active_scans() == []
            engine.policies.remove('pii-protection')
        scan.join(timeout=5)

        assert not scan.is_alive()
        assert results[0].status == ScanStatus.COMPLETED
        assert results[0].total_scanned == 1
        assert results[0].violations == []

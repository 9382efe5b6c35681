"""
Shared fixtures for the DLP test suite.
"""
import pytest

from dlp.core import DataContext
from dlp.engine import DLPEngine
from dlp.errors import SourceProducerError
from dlp.sources import ScanUnit, SourceProducer


class StaticProducer(SourceProducer):
    """In-memory producer that yields a fixed list of units.

    With ``fail_after`` set, it raises SourceProducerError once that many
    units have been handed out.
    """

    def __init__(self, units, fail_after=None, **kwargs):
        super().__init__(**kwargs)
        self.units = list(units)
        self.fail_after = fail_after

    def iter_units(self, request):
        for i, unit in enumerate(self.units):
            if self.fail_after is not None and i >= self.fail_after:
                raise SourceProducerError("backend connection lost")
            yield unit


def build_unit(text, source='file_system', location='/data/shared', file_name='notes.txt',
               sender=None, recipient=None, size_hint=None, **metadata):
    return ScanUnit(
        text=text,
        context=DataContext(
            source=source,
            location=location,
            file_name=file_name,
            sender=sender,
            recipient=recipient,
            metadata=metadata,
        ),
        size_hint=size_hint,
    )


@pytest.fixture
def engine():
    """Engine with the built-in patterns and policies."""
    return DLPEngine()


@pytest.fixture
def make_unit():
    return build_unit


@pytest.fixture
def static_producer():
    return StaticProducer

import pytest

from factories import DIRECTORY, RecordingGateway
from quote_approvals.engine import build_engine
from quote_approvals.services.business_hours import BusinessCalendar
from quote_approvals.services.directory import StaticDirectory
from quote_approvals.services.notification_service import DispatchLimits
from quote_approvals.services.store import InMemoryStore


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def calendar():
    return BusinessCalendar(tz="UTC", day_start=9, day_end=17)


@pytest.fixture
def engine(gateway, calendar):
    return build_engine(
        store=InMemoryStore(),
        directory=StaticDirectory(DIRECTORY),
        gateway=gateway,
        calendar=calendar,
        limits=DispatchLimits(),
        concurrency=4,
    )

import pytest

from expense_portal.config import Settings
from expense_portal.db import open_store
from expense_portal.notifications import LoggingMailer
from expense_portal.portal import Portal
from tests.factories import seed


@pytest.fixture
def store():
    return open_store(check_same_thread=False)


@pytest.fixture
def ids(store):
    return seed(store)


@pytest.fixture
def mailer():
    return LoggingMailer()


@pytest.fixture
def portal(store, ids, mailer):
    return Portal(store, Settings(_env_file=None), mailer)

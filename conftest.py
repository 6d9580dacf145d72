import pytest

from bookshare.credentials import StaticCredentialStore
from bookshare.utils.ui_helpers import OUTPUT_MODE_ENV


@pytest.fixture
def credentials():
    # Logged in as the borrower of the test shares
    return StaticCredentialStore("test-token", "borrower-1")


@pytest.fixture
def anonymous():
    return StaticCredentialStore(None, None)


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    # Every test starts in plain output mode regardless of the shell environment
    monkeypatch.delenv(OUTPUT_MODE_ENV, raising=False)

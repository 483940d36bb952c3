"""Shared fakes for the secret store and the service manager."""
import threading

import pytest

from agent_optoolkit.secrets.domains.errors import ServiceControlError
from agent_optoolkit.secrets.domains.models import Session, VaultRef
from agent_optoolkit.secrets.domains.retry import RetryPolicy
from agent_optoolkit.secrets.domains.service_control import ServiceController


class FakeSecretStore:
    """In-memory stand-in for OnePasswordClient.

    ``values`` maps ``op://`` URIs to bytes, or to an exception (or a list of
    exceptions/bytes consumed one per call) to simulate failures.
    """

    def __init__(self, values=None):
        self.values = dict(values or {})
        self.calls = []
        self.auth_calls = []
        self.auth_error = None
        self._lock = threading.Lock()

    def set(self, reference: str, value):
        self.values[reference] = value

    def authenticate(self, source):
        self.auth_calls.append(source)
        if self.auth_error is not None:
            raise self.auth_error
        return Session(source=source)

    def fetch_secret(self, session, vault_ref: VaultRef) -> bytes:
        with self._lock:
            self.calls.append(vault_ref.uri)
            value = self.values[vault_ref.uri]
            if isinstance(value, list):
                value = value.pop(0)
        if isinstance(value, BaseException):
            raise value
        return value

    def calls_for(self, uri: str) -> int:
        return self.calls.count(uri)


class RecordingController(ServiceController):
    """Records actions; services listed in ``failures`` raise with that reason."""

    def __init__(self, failures=None):
        self.actions = []
        self.timeouts = []
        self.failures = dict(failures or {})

    def perform_action(self, service_name, action, timeout):
        self.actions.append((service_name, action.value))
        self.timeouts.append(timeout)
        if service_name in self.failures:
            raise ServiceControlError(self.failures[service_name], service_name=service_name)


@pytest.fixture
def fake_store():
    return FakeSecretStore()


@pytest.fixture
def controller():
    return RecordingController()


@pytest.fixture
def no_wait_policy():
    """Retry policy with three attempts and no sleeping."""
    return RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)


@pytest.fixture
def make_controller():
    """Factory for controllers with scripted failures."""
    return RecordingController

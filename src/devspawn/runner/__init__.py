"""Runner side: queue client, credential socket, named containers, polling daemon."""

from devspawn.runner.client import JobQueueClient, QueueAuthError, QueueError
from devspawn.runner.credential_server import CredentialForwardingServer, CredentialServerError
from devspawn.runner.daemon import RunnerDaemon
from devspawn.runner.pool import NamedContainerPool
from devspawn.runner.registrations import RegistrationStore

__all__ = [
    "CredentialForwardingServer",
    "CredentialServerError",
    "JobQueueClient",
    "NamedContainerPool",
    "QueueAuthError",
    "QueueError",
    "RegistrationStore",
    "RunnerDaemon",
]

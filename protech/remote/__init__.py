"""Remote data access for protech."""

from protech.remote.client import RemoteClient
from protech.remote.realtime import PollingSubscription

__all__ = ["PollingSubscription", "RemoteClient"]

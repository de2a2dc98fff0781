"""Google Drive remote store client.

Public API
----------
.. autoclass:: DriveClient
.. autoclass:: TokenManager
"""

from vaultsync.remote.auth import TokenManager
from vaultsync.remote.drive import DriveClient

__all__ = ["DriveClient", "TokenManager"]

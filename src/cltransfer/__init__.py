"""cltransfer — Update content library items through update sessions."""

__version__ = "0.1.0"

from cltransfer.client.api import ContentLibraryClient
from cltransfer.client.driver import FileTransferDriver
from cltransfer.client.orchestrator import (
    FileSource,
    ItemHandle,
    UpdateSessionOrchestrator,
    resolve_item,
)
from cltransfer.client.session import UpdateSession
from cltransfer.client.settings import TransferSettings
from cltransfer.client.transfer_spec import TransferSpec, classify
from cltransfer.server.app import create_app

__all__ = [
    "__version__",
    "ContentLibraryClient",
    "FileSource",
    "FileTransferDriver",
    "ItemHandle",
    "TransferSettings",
    "TransferSpec",
    "UpdateSession",
    "UpdateSessionOrchestrator",
    "classify",
    "create_app",
    "resolve_item",
]

from ._schema import SCHEMA_VERSION, SCHEMA_SQL
from .actors import ActorRepo
from .balances import AccrualWriter, LedgerMirrorWriter, PayoutWriter
from .channels import ChannelRepo
from .sessions import SessionRepo
from .closure_requests import ClosureRequestRepo
from .discrepancies import DiscrepancyRepo
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "ActorRepo",
    "AccrualWriter",
    "LedgerMirrorWriter",
    "PayoutWriter",
    "ChannelRepo",
    "SessionRepo",
    "ClosureRequestRepo",
    "DiscrepancyRepo",
    "StorageManager",
]

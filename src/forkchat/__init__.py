"""forkchat: branchable chat over a stateful completion API."""

__version__ = "0.1.0"

from forkchat.config import ForkchatConfig
from forkchat.events import EventCollector
from forkchat.gateway import CompletionGateway, GatewayResponse, RequestKind
from forkchat.queue import IngestionQueue
from forkchat.chain import ChainController
from forkchat.branches import BranchManager
from forkchat.summarizer import Summarizer
from forkchat.merge import MergeEngine
from forkchat.tasks import CodeTask, TaskIngestor
from forkchat.store import ChatStore
from forkchat.session import ChatSession
from forkchat.models import Branch, ChainState, CloseOutcome, MergeMode, Mode, Role, Turn

__all__ = [
    "ForkchatConfig",
    "EventCollector",
    "CompletionGateway",
    "GatewayResponse",
    "RequestKind",
    "IngestionQueue",
    "ChainController",
    "BranchManager",
    "Summarizer",
    "MergeEngine",
    "CodeTask",
    "TaskIngestor",
    "ChatStore",
    "ChatSession",
    "Branch",
    "ChainState",
    "CloseOutcome",
    "MergeMode",
    "Mode",
    "Role",
    "Turn",
]

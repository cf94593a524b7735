"""Agent session engine: drives one coding-agent CLI process for many conversations."""
from .config import EngineConfig
from .control import ControlChannel, PendingControlRequest
from .errors import (
    AgentDeskError,
    AgentNotInstalledError,
    AgentProcessError,
    ConversationBusyError,
    ConversationLimitError,
    ConversationNotFoundError,
    ErrorCategory,
    LoginRequiredError,
    SupervisorBusyError,
)
from .framing import LineFramer
from .permissions import PermissionPatternCache, generalize_command
from .reducer import ConversationReducer, rebuild_transcript
from .scheduler import Conversation, TabScheduler
from .session_state import SessionState
from .supervisor import (
    ImageAttachment,
    ProcessSupervisor,
    SupervisorChannels,
    TurnOptions,
    TurnPayload,
)

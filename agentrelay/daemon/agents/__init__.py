"""Protocol adapters, one per agent kind.

Adapters are stateful per session, so callers create a fresh instance for
every session with ``create_adapter``.
"""

from agentrelay.daemon.agents.amp import AmpAdapter
from agentrelay.daemon.agents.base import AgentAdapter, NativeEvent, PerMessageAdapter, RpcAdapter
from agentrelay.daemon.agents.claude import ClaudeAdapter
from agentrelay.daemon.agents.codex import CodexAdapter
from agentrelay.daemon.agents.opencode import OpenCodeAdapter
from agentrelay.daemon.agents.pi import PiAdapter
from agentrelay.daemon.models.enums import AgentKind
from agentrelay.daemon.models.session import AgentCapabilities

ADAPTERS: dict[AgentKind, type] = {
    AgentKind.CLAUDE: ClaudeAdapter,
    AgentKind.CODEX: CodexAdapter,
    AgentKind.OPENCODE: OpenCodeAdapter,
    AgentKind.AMP: AmpAdapter,
    AgentKind.PI: PiAdapter,
}


def create_adapter(kind: AgentKind) -> AgentAdapter:
    return ADAPTERS[kind]()


def capabilities_of(kind: AgentKind) -> AgentCapabilities:
    return ADAPTERS[kind].capabilities


__all__ = [
    "ADAPTERS",
    "AgentAdapter",
    "AmpAdapter",
    "ClaudeAdapter",
    "CodexAdapter",
    "NativeEvent",
    "OpenCodeAdapter",
    "PerMessageAdapter",
    "PiAdapter",
    "RpcAdapter",
    "capabilities_of",
    "create_adapter",
]

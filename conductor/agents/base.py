"""Abstract agent-execution service: run one directive, return its text."""

from abc import ABC, abstractmethod

from conductor.models import AgentArtifact, AgentRequest


class AgentFailure(Exception):
    """Raised when a single agent invocation fails."""

    def __init__(self, agent_role: str, message: str) -> None:
        self.agent_role = agent_role
        super().__init__(f"[{agent_role}] {message}")


class AgentExecutor(ABC):
    """Abstract base for anything that can run an agent directive."""

    @abstractmethod
    def name(self) -> str:
        """Return a short executor name for logs (e.g. 'anthropic')."""
        ...

    @abstractmethod
    async def invoke(self, request: AgentRequest) -> AgentArtifact:
        """Run the directive and return the produced artifact.

        Args:
            request: Directive text, model role hint and bookkeeping fields.

        Returns:
            AgentArtifact with content and metadata.

        Raises:
            AgentFailure: On service failure, timeout, or empty output.
        """
        ...

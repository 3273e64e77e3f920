"""Exceptions raised by the session engine.

Configuration and transport errors reach the caller and are never written
into a conversation. Tool errors are turned into tool-result messages.
"""


class SessionEngineError(Exception):
    """Base class for all engine errors."""


class ProviderConfigError(SessionEngineError):
    """A provider/model identifier could not be resolved."""


class ProviderNotFound(ProviderConfigError):
    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        super().__init__(f'Provider "{provider_id}" not found')


class ModelNotFound(ProviderConfigError):
    def __init__(self, provider_id: str, model_id: str) -> None:
        self.provider_id = provider_id
        self.model_id = model_id
        super().__init__(f'Model "{model_id}" not found for provider "{provider_id}"')


class GenerationInProgress(SessionEngineError):
    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(f'A generation is already running for project "{project_id}"')


class SessionNotReady(SessionEngineError):
    """Persistence is required but no history store is available."""


class TransportError(SessionEngineError):
    """The provider call failed (auth, network, unknown model, broken stream)."""


class MaxIterationsExceeded(SessionEngineError):
    def __init__(self, project_id: str, max_iterations: int) -> None:
        self.project_id = project_id
        self.max_iterations = max_iterations
        super().__init__(
            f'Generation for project "{project_id}" exceeded {max_iterations} iterations'
        )


class ToolExecutionError(SessionEngineError):
    """Raised by tool adapters; the agent loop records it as tool output."""

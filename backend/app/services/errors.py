class EngineError(Exception):
    """Base class for errors surfaced by the decision engine services."""


class DuplicateEmailError(EngineError):
    def __init__(self, message_id: str, tenant_id: str):
        super().__init__(f"email {message_id!r} already ingested for tenant {tenant_id!r}")
        self.message_id = message_id
        self.tenant_id = tenant_id


class NotFoundError(EngineError):
    pass


class InvalidTransitionError(EngineError):
    pass


class LLMUnavailableError(EngineError):
    pass

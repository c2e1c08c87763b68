class PalaverError(Exception):
    pass


class EngineStateError(PalaverError):
    """A call that is illegal for the conversation's current state."""


class EngineBusyError(EngineStateError):
    pass


class EmptyMessageError(EngineStateError):
    pass


class NoAssistantMessageError(EngineStateError):
    pass


class NoUserMessageError(EngineStateError):
    pass


class InvalidTurnNumberError(EngineStateError):
    pass


class ToolLoopExceededError(PalaverError):
    def __init__(self, rounds: int):
        super().__init__(f"Model kept calling tools after {rounds} rounds")
        self.rounds = rounds

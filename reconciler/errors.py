from __future__ import annotations


class ReconcilerError(RuntimeError):
    def __init__(self, action: str, detail: str) -> None:
        super().__init__(f"{action}: {detail}")
        self.action = action
        self.detail = detail


class ConfigurationError(ReconcilerError):
    """The declared resource asks for something that cannot be reconciled."""


class GatewayError(ReconcilerError):
    """The cluster substrate rejected or failed an operation."""


class HealthTimeoutError(ReconcilerError):
    """A restarted instance never reported healthy within the operation timeout."""

    def __init__(self, action: str, detail: str, *, instance: str) -> None:
        super().__init__(action, detail)
        self.instance = instance


class PartialRolloutError(ReconcilerError):
    """Some dependent rollouts failed; carries every failure, first one reported."""

    def __init__(self, action: str, failures: dict[str, BaseException]) -> None:
        first_name, first_error = next(iter(failures.items()))
        super().__init__(
            action,
            f"{len(failures)} rollout(s) failed; first: {first_name}: {first_error}",
        )
        self.failures = failures
        self.first_error = first_error

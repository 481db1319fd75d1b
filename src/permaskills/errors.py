from __future__ import annotations

EXIT_SUCCESS = 0
EXIT_USER_ERROR = 1
EXIT_SYSTEM_ERROR = 2
EXIT_AUTH_ERROR = 3


class SkillsError(RuntimeError):
    """
    Base error. `kind` is a short machine-checkable tag, `hint` a remediation line for humans.
    """

    kind = "error"

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ValidationError(SkillsError):
    kind = "validation"


class ManifestMissingError(ValidationError):
    pass


class InstallConflictError(ValidationError):
    def __init__(self, message: str, *, path: str, hint: str | None = None) -> None:
        super().__init__(message, hint=hint or "Re-run with --force to overwrite the existing install.")
        self.path = path


class ConfigurationError(SkillsError):
    kind = "configuration"

    def __init__(self, message: str, *, key: str | None = None, hint: str | None = None) -> None:
        super().__init__(message, hint=hint)
        self.key = key


class AuthorizationError(SkillsError):
    kind = "authorization"


class InsufficientFundsError(AuthorizationError):
    def __init__(self, message: str, *, address: str, balance: int, cost: int) -> None:
        super().__init__(message, hint=f"Add funds to wallet address {_truncate(address)} and retry.")
        self.address = address
        self.balance = balance
        self.cost = cost


class NetworkError(SkillsError):
    kind = "network"

    TIMEOUT = "timeout"
    CONNECTION_FAILURE = "connection_failure"
    GATEWAY_ERROR = "gateway_error"
    NOT_FOUND = "not_found"

    def __init__(
        self,
        message: str,
        *,
        error_type: str = CONNECTION_FAILURE,
        endpoint: str | None = None,
        status_code: int | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.error_type = error_type
        self.endpoint = endpoint
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.error_type == self.NOT_FOUND


class RegistryRejectedError(NetworkError):
    """The registry answered a write with an Error action."""

    def __init__(self, message: str, *, endpoint: str | None = None) -> None:
        super().__init__(
            message,
            error_type=NetworkError.GATEWAY_ERROR,
            endpoint=endpoint,
            hint="Fix the rejected field and publish again with a new version.",
        )


class FileSystemError(SkillsError):
    kind = "filesystem"

    def __init__(self, message: str, *, path: str | None = None, hint: str | None = None) -> None:
        super().__init__(message, hint=hint)
        self.path = path


class DependencyError(SkillsError):
    kind = "dependency"

    def __init__(self, message: str, *, name: str, path: list[str] | None = None, hint: str | None = None) -> None:
        super().__init__(message, hint=hint)
        self.name = name
        self.path = list(path or [])


class CircularDependencyError(DependencyError):
    def __init__(self, path: list[str]) -> None:
        super().__init__(
            f"Circular dependency detected: {' -> '.join(path)}",
            name=path[0],
            path=path,
            hint="Remove the cycle from the skill manifests.",
        )


class DependencyDepthError(DependencyError):
    def __init__(self, path: list[str], max_depth: int) -> None:
        super().__init__(
            f"Dependency depth limit exceeded (max: {max_depth} levels): {' -> '.join(path)}",
            name=path[-1],
            path=path,
            hint="Reduce dependency nesting or check the manifests for misconfigured dependencies.",
        )
        self.max_depth = max_depth


class InstallError(SkillsError):
    """Raised when one package of a plan fails; siblings installed before it stay in place."""

    def __init__(self, package: str, cause: SkillsError) -> None:
        super().__init__(
            f"Failed to install {package}: {cause}",
            hint=cause.hint or "Re-run install; already installed packages are skipped.",
        )
        self.package = package
        self.cause = cause
        self.kind = cause.kind


def exit_code_for(err: BaseException) -> int:
    if isinstance(err, InstallError):
        return exit_code_for(err.cause)
    if isinstance(err, AuthorizationError):
        return EXIT_AUTH_ERROR
    if isinstance(err, (ValidationError, ConfigurationError, DependencyError)):
        return EXIT_USER_ERROR
    return EXIT_SYSTEM_ERROR


def _truncate(address: str) -> str:
    if len(address) <= 12:
        return address
    return f"{address[:6]}...{address[-6:]}"

from __future__ import annotations


class SkillmeshError(Exception):
    """Base error for SkillMesh."""

    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "", *, retry_after_s: float | None = None) -> None:
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or self.code
        self.retry_after_s = retry_after_s


class TenantNotIdentifiedError(SkillmeshError):
    """No tenant hint present in the request."""

    code = "TENANT_NOT_IDENTIFIED"
    status_code = 400


class TenantNotFoundError(SkillmeshError):
    """Tenant hint resolved to no registry record."""

    code = "TENANT_NOT_FOUND"
    status_code = 404


class TenantUnavailableError(SkillmeshError):
    """Tenant suspended, decommissioned, or frozen for cutover."""

    code = "TENANT_UNAVAILABLE"
    status_code = 503
    retryable = True


class ConflictError(SkillmeshError):
    """Concurrent mutation or migration already in flight."""

    code = "CONFLICT"
    status_code = 409


class PoolExhaustedError(SkillmeshError):
    """Connection pool saturated past the acquisition timeout."""

    code = "POOL_EXHAUSTED"
    status_code = 503
    retryable = True


class ValidationError(SkillmeshError):
    """Malformed tenant record."""

    code = "VALIDATION_ERROR"
    status_code = 422


class MigrationVerificationError(SkillmeshError):
    """Row count or checksum mismatch between migration source and target."""

    code = "MIGRATION_VERIFICATION_FAILED"
    status_code = 409


class MigrationStateError(SkillmeshError):
    """Requested migration transition is not allowed from the current state."""

    code = "MIGRATION_STATE_INVALID"
    status_code = 409


class RegistryUnavailableError(SkillmeshError):
    """Tenant registry lookup timed out or failed."""

    code = "REGISTRY_UNAVAILABLE"
    status_code = 503
    retryable = True


class DatabaseError(SkillmeshError):
    """Database layer failure."""

    code = "DATABASE_ERROR"


class MigrationCutoverTimeoutError(MigrationStateError):
    """Cutover did not finish within the write freeze window."""

    code = "MIGRATION_CUTOVER_TIMEOUT"


class MigrationNotFoundError(SkillmeshError):
    """No migration job with the requested id."""

    code = "MIGRATION_NOT_FOUND"
    status_code = 404

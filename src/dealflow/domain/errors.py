from __future__ import annotations


class DomainError(RuntimeError):
    status_code = 500


class NotFoundError(DomainError):
    status_code = 404


class InvalidStageError(DomainError):
    status_code = 400


class ConflictError(DomainError):
    status_code = 409


class StorageFailure(DomainError):
    status_code = 500

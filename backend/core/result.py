"""
Résultat explicite des opérations des moteurs : succès avec valeur, ou échec typé.
Les routers traduisent les échecs en HTTPException via core.exceptions.unwrap.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN    = "forbidden"
    NOT_FOUND    = "not_found"
    BAD_REQUEST  = "bad_request"   # entrée invalide, transition interdite, solde insuffisant
    CONFLICT     = "conflict"      # écriture concurrente / opération déjà faite
    INTERNAL     = "internal"


@dataclass(frozen=True)
class EngineError:
    kind:    ErrorKind
    message: str


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[EngineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str) -> "Result[T]":
        return cls(error=EngineError(kind=kind, message=message))

    @classmethod
    def not_found(cls, message: str) -> "Result[T]":
        return cls.failure(ErrorKind.NOT_FOUND, message)

    @classmethod
    def bad_request(cls, message: str) -> "Result[T]":
        return cls.failure(ErrorKind.BAD_REQUEST, message)

    @classmethod
    def forbidden(cls, message: str = "Accès refusé") -> "Result[T]":
        return cls.failure(ErrorKind.FORBIDDEN, message)

    @classmethod
    def conflict(cls, message: str) -> "Result[T]":
        return cls.failure(ErrorKind.CONFLICT, message)

    @classmethod
    def internal(cls, message: str = "Erreur interne, réessayez plus tard") -> "Result[T]":
        return cls.failure(ErrorKind.INTERNAL, message)

    def propagate(self) -> "Result":
        """Réemballe l'échec pour le renvoyer depuis une opération d'un autre type."""
        return Result(error=self.error)

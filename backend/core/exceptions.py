from typing import TypeVar

from fastapi import HTTPException, status

from core.result import EngineError, ErrorKind, Result

T = TypeVar("T")


def credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Identifiants invalides ou token expiré",
        headers={"WWW-Authenticate": "Bearer"},
    )


def forbidden_exception(detail: str = "Accès refusé") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=detail,
    )


_STATUS_BY_KIND = {
    ErrorKind.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.FORBIDDEN:    status.HTTP_403_FORBIDDEN,
    ErrorKind.NOT_FOUND:    status.HTTP_404_NOT_FOUND,
    ErrorKind.BAD_REQUEST:  status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONFLICT:     status.HTTP_409_CONFLICT,
    ErrorKind.INTERNAL:     status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def engine_exception(error: EngineError) -> HTTPException:
    """Erreur moteur → HTTPException, avec le type d'erreur lisible par machine."""
    if error.kind == ErrorKind.UNAUTHORIZED:
        return credentials_exception()
    return HTTPException(
        status_code=_STATUS_BY_KIND[error.kind],
        detail={"kind": error.kind.value, "message": error.message},
    )


def unwrap(result: Result[T]) -> T:
    """Retourne la valeur d'un Result ou lève l'HTTPException correspondante."""
    if not result.ok:
        raise engine_exception(result.error)
    return result.value

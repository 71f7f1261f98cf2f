"""Request-scoped access to the application's verification service."""

from fastapi import HTTPException, Request

from credence.verification.service import VerificationService


def get_service(request: Request) -> VerificationService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Verification service is not ready.")
    return service

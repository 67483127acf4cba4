"""
Router for persona endpoints.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from schemas import PersonaCreateRequest, PersonaListResponse, PersonaResponse
from services import PersonaService


router = APIRouter(prefix="/api/personas", tags=["personas"])


@router.get("", response_model=PersonaListResponse)
def list_personas(db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    """List the caller's personas with avatar and training progress."""
    personas = [PersonaResponse(**PersonaService.summarize(p)) for p in PersonaService(db).list_personas(user_id)]
    return PersonaListResponse(personas=personas, count=len(personas))


@router.post("", response_model=PersonaResponse, status_code=201)
def create_persona(
    request: PersonaCreateRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user),
):
    persona = PersonaService(db).create_persona(user_id, request)
    return PersonaResponse(**PersonaService.summarize(persona))


@router.delete("/{persona_id}")
def delete_persona(persona_id: str, db: Session = Depends(get_db), user_id: str = Depends(get_current_user)):
    PersonaService(db).delete_persona(persona_id, user_id)
    return {"success": True}

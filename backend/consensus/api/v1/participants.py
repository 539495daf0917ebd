import logging
import secrets
import uuid
from typing import Callable, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from consensus.core.config import get_settings
from consensus.core.security import (
    create_embed_token,
    decode_embed_token,
    hash_api_key,
    verify_api_key,
    verify_plugin_signature,
)
from consensus.core.timeutil import utcnow
from consensus.db.session import SessionLocal
from consensus.models.participant import Participant
from consensus.schemas.participant import (
    EmbedTokenResponse,
    ParticipantMe,
    ParticipantRegisterRequest,
    ParticipantResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def generate_api_key(participant_id: uuid.UUID) -> str:
    # The id prefix lets us verify one hash instead of scanning every participant.
    return f"{participant_id}.{secrets.token_urlsafe(32)}"


def _participant(db: Session, raw_id: str) -> Optional[Participant]:
    try:
        participant_id = uuid.UUID(raw_id)
    except ValueError:
        return None
    return db.get(Participant, participant_id)


def api_key_resolver(db: Session, request: Request) -> Optional[Participant]:
    api_key = request.headers.get("X-API-Key")
    if not api_key or "." not in api_key:
        return None
    participant = _participant(db, api_key.split(".", 1)[0])
    if participant is not None and verify_api_key(api_key, participant.api_key_hash):
        return participant
    return None


def embed_token_resolver(db: Session, request: Request) -> Optional[Participant]:
    authorization = request.headers.get("Authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    participant_id = decode_embed_token(token.strip())
    return db.get(Participant, participant_id) if participant_id else None


def plugin_signature_resolver(db: Session, request: Request) -> Optional[Participant]:
    user_id = request.headers.get("X-Plugin-User")
    signature = request.headers.get("X-Plugin-Signature")
    if not user_id or not signature or not verify_plugin_signature(user_id, signature):
        return None
    return _participant(db, user_id)


IDENTITY_RESOLVERS: tuple[Callable[[Session, Request], Optional[Participant]], ...] = (
    api_key_resolver,
    embed_token_resolver,
    plugin_signature_resolver,
)

_CREDENTIAL_HEADERS = ("X-API-Key", "Authorization", "X-Plugin-Signature")


def resolve_identity(request: Request, db: Session = Depends(get_db)) -> Participant:
    for resolver in IDENTITY_RESOLVERS:
        participant = resolver(db, request)
        if participant is not None:
            return participant

    if not any(request.headers.get(header) for header in _CREDENTIAL_HEADERS):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing credentials")
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")


@router.post("/register", response_model=ParticipantResponse)
def register_participant(payload: ParticipantRegisterRequest, db: Session = Depends(get_db)) -> ParticipantResponse:
    participant_id = uuid.uuid4()
    api_key = generate_api_key(participant_id)

    participant = Participant(
        id=participant_id,
        display_name=payload.display_name.strip(),
        api_key_hash=hash_api_key(api_key),
        created_at=utcnow(),
    )
    db.add(participant)
    db.commit()
    db.refresh(participant)
    logger.info("Registered participant %s", participant.id)

    return ParticipantResponse(
        participant_id=participant.id,
        display_name=participant.display_name,
        api_key=api_key,
        created_at=participant.created_at,
    )


@router.get("/me", response_model=ParticipantMe)
def whoami(participant: Participant = Depends(resolve_identity)) -> ParticipantMe:
    return ParticipantMe(participant_id=participant.id, display_name=participant.display_name)


@router.post("/embed-token", response_model=EmbedTokenResponse)
def issue_embed_token(participant: Participant = Depends(resolve_identity)) -> EmbedTokenResponse:
    ttl = get_settings().embed_token_ttl_minutes
    return EmbedTokenResponse(token=create_embed_token(participant.id, ttl), expires_in_minutes=ttl)

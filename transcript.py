"""Build Notion `runInferenceTranscript` bodies from OpenAI chat requests."""

from __future__ import annotations

import logging
import random
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import continuity
from errors import NoSessionAvailable
from models import ModelCatalog
from session_pool import Session

log = logging.getLogger("notion_bridge")

_SPACE_WORDS = ("Project", "Workspace", "Team", "Studio", "Lab", "Hub", "Zone", "Space")


def generate_item_id() -> str:
    """Generate a transcript item id shaped like Notion's: 2036702a-4d19-80xx-xxxx-00aaxxxxxxxx."""
    return (
        f"2036702a-4d19-80{secrets.token_hex(1)}-{secrets.token_hex(2)}-00aa{secrets.token_hex(4)}"
    )


def local_iso_now() -> str:
    """Current local time as ISO-8601 with milliseconds and UTC offset."""
    return datetime.now().astimezone().isoformat(timespec="milliseconds")


def random_display_names() -> tuple[str, str]:
    """A throwaway (user name, space name) pair shown in the Notion UI."""
    user_name = f"User{random.randint(100, 999)}"
    space_name = f"{random.choice(_SPACE_WORDS)} {random.randint(1, 99)}"
    return user_name, space_name


@dataclass
class TranscriptItem:
    """One entry of the Notion transcript."""

    type: str
    value: Any
    id: str = field(default_factory=generate_item_id)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "type": self.type, "value": self.value}
        out.update(self.extra)
        return out

    @classmethod
    def config(cls, model: str) -> TranscriptItem:
        return cls(type="config", value={"type": "markdown-chat", "model": model})

    @classmethod
    def context(
        cls,
        session: Session,
        *,
        timezone: str,
        now_iso: str,
        user_name: str,
        space_name: str,
    ) -> TranscriptItem:
        return cls(
            type="context",
            value={
                "userId": session.user_id,
                "spaceId": session.space_id,
                "surface": "home_module",
                "timezone": timezone,
                "userName": user_name,
                "spaceName": space_name,
                "spaceViewId": str(uuid.uuid4()),
                "currentDatetime": now_iso,
            },
        )

    @classmethod
    def user_turn(cls, text: str, user_id: str, created_at: str) -> TranscriptItem:
        return cls(
            type="user",
            value=[[text]],
            extra={"userId": user_id, "createdAt": created_at},
        )

    @classmethod
    def assistant_turn(cls, text: str, trace_id: str, created_at: str) -> TranscriptItem:
        return cls(
            type="markdown-chat",
            value=text,
            extra={"traceId": trace_id, "createdAt": created_at},
        )


@dataclass
class BackendRequest:
    """A translated request ready to POST to Notion."""

    body: Dict[str, Any]
    thread_id: Optional[str]
    model: str

    @property
    def is_new_thread(self) -> bool:
        return self.thread_id is None

    @property
    def transcript(self) -> List[Dict[str, Any]]:
        return self.body["transcript"]


class RequestTranslator:
    """Translate chat history into a Notion transcript for a given session."""

    def __init__(self, catalog: ModelCatalog, timezone: str = "America/Los_Angeles") -> None:
        self._catalog = catalog
        self._timezone = timezone

    def build(
        self,
        request: Dict[str, Any],
        session: Optional[Session],
        thread_id: Optional[str],
    ) -> BackendRequest:
        """
        Build the backend body.

        With a thread id only the latest user turn is sent, because Notion
        already holds the earlier turns under that thread. Without one the
        whole history is sent and Notion is asked to create a thread.
        """
        if session is None:
            raise NoSessionAvailable("cannot build a Notion request without a session")

        messages = request.get("messages") or []
        model = self._catalog.resolve(request.get("model"))
        now_iso = local_iso_now()
        user_name, space_name = random_display_names()

        transcript: List[TranscriptItem] = [
            TranscriptItem.config(model),
            TranscriptItem.context(
                session,
                timezone=self._timezone,
                now_iso=now_iso,
                user_name=user_name,
                space_name=space_name,
            ),
        ]

        if thread_id:
            user_turns = [m for m in messages if isinstance(m, dict) and m.get("role") == "user"]
            to_send = user_turns[-1:]
        else:
            to_send = [m for m in messages if isinstance(m, dict)]

        for message in to_send:
            item = self._turn_item(message, session, now_iso)
            if item is not None:
                transcript.append(item)

        body = {
            "traceId": str(uuid.uuid4()),
            "spaceId": session.space_id,
            "transcript": [t.to_dict() for t in transcript],
            "threadId": thread_id or None,
            "createThread": not thread_id,
            "debugOverrides": {
                "cachedInferences": {},
                "annotationInferences": {},
                "emitInferences": False,
            },
            "generateTitle": True,
            "saveAllThreadOperations": True,
        }
        log.debug(
            "Built Notion request user_id=%s model=%s thread=%s items=%d",
            session.user_id,
            model,
            thread_id or "<new>",
            len(transcript),
        )
        return BackendRequest(body=body, thread_id=thread_id or None, model=model)

    @staticmethod
    def _turn_item(message: Dict[str, Any], session: Session, now_iso: str) -> Optional[TranscriptItem]:
        role = message.get("role")
        text = continuity.strip(continuity.flatten_content(message.get("content")))
        created_at = message.get("createdAt") or now_iso

        if role in ("system", "user"):
            return TranscriptItem.user_turn(text, session.user_id, created_at)
        if role == "assistant":
            trace_id = message.get("traceId") or str(uuid.uuid4())
            return TranscriptItem.assistant_turn(text, trace_id, created_at)
        log.debug("Skipping message with unsupported role=%r", role)
        return None

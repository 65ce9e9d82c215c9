"""Durable record of synthesis requests and their status transitions.

Every status write goes through `transition`, a conditional UPDATE that only
succeeds when the current status is a valid predecessor of the target. This is
what keeps terminal states from regressing when a job is redelivered.
"""

import datetime as dt
from datetime import datetime

from loguru import logger
from sqlalchemy import func, update
from sqlmodel import col, select

from voicetip.gateway.db import SessionFactory
from voicetip.gateway.domain_models import TRANSITIONS, Creator, RequestStatus, TTSRequest, User
from voicetip.gateway.exceptions import InvalidInputError


class RequestStore:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    async def create(self, requester_id: int, creator_id: int, message: str, voice: str) -> TTSRequest:
        """Insert a new request at `pending` after checking both ids resolve."""
        async with self._session_factory() as session:
            if await session.get(User, requester_id) is None:
                raise InvalidInputError(f"Invalid requester id {requester_id!r}")
            if await session.get(Creator, creator_id) is None:
                raise InvalidInputError(f"Invalid creator id {creator_id!r}")

            request = TTSRequest(
                requester_id=requester_id,
                creator_id=creator_id,
                message=message,
                voice=voice,
                status=RequestStatus.pending,
            )
            session.add(request)
            await session.commit()
            await session.refresh(request)
            return request

    async def get(self, request_id: int) -> TTSRequest | None:
        async with self._session_factory() as session:
            return await session.get(TTSRequest, request_id)

    async def get_user(self, user_id: int) -> User | None:
        async with self._session_factory() as session:
            return await session.get(User, user_id)

    async def transition(
        self,
        request_id: int,
        to: RequestStatus,
        *,
        audio_url: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Move a request to `to` if its current status allows it. Returns False if nothing changed."""
        if to == RequestStatus.completed and not audio_url:
            raise ValueError("A completed request needs an audio URL")

        values: dict = {"status": to}
        if to.is_terminal:
            values["processed_at"] = datetime.now(tz=dt.UTC)
            values["audio_url"] = audio_url if to == RequestStatus.completed else None
            values["error"] = error if to == RequestStatus.failed else None

        stmt = (
            update(TTSRequest)
            .where(col(TTSRequest.id) == request_id)
            .where(col(TTSRequest.status).in_(sorted(TRANSITIONS[to])))
            .values(**values)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            await session.commit()

        changed = result.rowcount == 1
        if not changed:
            logger.bind(request_id=request_id).debug(f"Transition to {to} rejected by current status")
        return changed

    async def list_for_requester(self, requester_id: int, page: int, limit: int) -> tuple[list[TTSRequest], int]:
        return await self._paginate(col(TTSRequest.requester_id) == requester_id, page, limit)

    async def list_for_creator(self, creator_id: int, page: int, limit: int) -> tuple[list[TTSRequest], int]:
        return await self._paginate(col(TTSRequest.creator_id) == creator_id, page, limit)

    async def _paginate(self, condition, page: int, limit: int) -> tuple[list[TTSRequest], int]:
        async with self._session_factory() as session:
            total = (await session.exec(select(func.count()).select_from(TTSRequest).where(condition))).one()
            rows = (
                await session.exec(
                    select(TTSRequest)
                    .where(condition)
                    .order_by(col(TTSRequest.created_at).desc(), col(TTSRequest.id).desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
            ).all()
        return list(rows), total

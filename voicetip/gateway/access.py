"""Who may see which synthesis request.

Every status read and artifact read goes through `can_view_request`. Callers
that fail the check get a 404, so the existence of other users' requests is
not revealed.
"""

from voicetip.gateway.domain_models import TTSRequest, User


def can_view_request(user: User, request: TTSRequest) -> bool:
    if user.is_admin:
        return True
    if request.requester_id == user.id:
        return True
    return user.creator_id is not None and user.creator_id == request.creator_id


def can_view_creator(user: User, creator_id: int) -> bool:
    return user.is_admin or user.creator_id == creator_id


def can_submit_as(user: User, requester_id: int) -> bool:
    return user.is_admin or user.id == requester_id

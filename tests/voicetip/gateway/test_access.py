from voicetip.gateway.access import can_submit_as, can_view_creator, can_view_request
from voicetip.gateway.domain_models import TTSRequest, User, UserRole

REQUEST = TTSRequest(id=1, requester_id=7, creator_id=3, message="hello", voice="v1")


def test_requester_can_view():
    assert can_view_request(User(id=7, username="fan"), REQUEST)


def test_creator_account_can_view():
    assert can_view_request(User(id=8, username="streamer", creator_id=3), REQUEST)


def test_admin_can_view():
    assert can_view_request(User(id=1, username="admin", role=UserRole.admin), REQUEST)


def test_other_creator_cannot_view():
    assert not can_view_request(User(id=10, username="other", creator_id=4), REQUEST)


def test_stranger_cannot_view():
    assert not can_view_request(User(id=9, username="lurker"), REQUEST)


def test_creator_listing():
    assert can_view_creator(User(id=8, username="streamer", creator_id=3), 3)
    assert not can_view_creator(User(id=7, username="fan"), 3)
    assert can_view_creator(User(id=1, username="admin", role=UserRole.admin), 3)


def test_submit_on_behalf():
    assert can_submit_as(User(id=7, username="fan"), 7)
    assert not can_submit_as(User(id=7, username="fan"), 8)
    assert can_submit_as(User(id=1, username="admin", role=UserRole.admin), 8)

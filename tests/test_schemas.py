from uuid import uuid4

import pytest
from pydantic import ValidationError

from learnchat.schemas.common import make_pagination, resolve_page
from learnchat.schemas.message import SendMessageRequest


def test_send_request_accepts_camel_case_and_one_target():
    receiver = uuid4()
    request = SendMessageRequest.model_validate({"receiverId": str(receiver), "content": "hi"})
    assert request.receiver_id == receiver
    assert request.conversation_id is None


@pytest.mark.parametrize("body", [
    {"content": "hi"},
    {"content": "hi", "receiverId": str(uuid4()), "conversationId": str(uuid4())},
    {"content": "", "receiverId": str(uuid4())},
    {"content": "x" * 10_001, "receiverId": str(uuid4())},
])
def test_send_request_rejects_invalid_bodies(body):
    with pytest.raises(ValidationError):
        SendMessageRequest.model_validate(body)


def test_resolve_page_caps_limit_and_keeps_raw_offsets():
    assert resolve_page(None, None, None) == (1, 0, 50)
    assert resolve_page(None, None, 500) == (1, 0, 100)
    assert resolve_page(3, None, 10) == (3, 20, 10)
    assert resolve_page(None, 20, 10) == (3, 20, 10)
    assert resolve_page(None, 5, 10) == (1, 5, 10)
    assert resolve_page(None, 15, 10) == (2, 15, 10)


def test_pagination_flags_follow_the_offset():
    pagination = make_pagination(page=1, limit=10, total=20, offset=5)
    assert pagination.has_prev is True
    assert pagination.has_next is True
    assert make_pagination(2, 10, 20, offset=15).has_next is False


def test_pagination_flags():
    pagination = make_pagination(page=2, limit=10, total=25)
    assert pagination.total_pages == 3
    assert pagination.has_next is True
    assert pagination.has_prev is True
    assert make_pagination(1, 10, 0).total_pages == 0

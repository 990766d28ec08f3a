from typing import List

import pytest

from marketplace_chat.schemas.message import Author, Message, Viewer
from marketplace_chat.utils.event_bus import EventBus
from tests.helpers import ALICE, FakeMessageStore, make_message


@pytest.fixture
def alice() -> Viewer:
    return Viewer(email=ALICE, user_id="alice-uid")


@pytest.fixture
def topics() -> EventBus:
    return EventBus()


@pytest.fixture
def scenario_messages() -> List[Message]:
    return [
        make_message("m1", "Hi, I can do pickup Friday", Author.SELLER, minutes=1, read=True),
        make_message("m2", "Still available?", Author.BUYER, minutes=2, read=False),
    ]


@pytest.fixture
def store(scenario_messages) -> FakeMessageStore:
    return FakeMessageStore(scenario_messages)

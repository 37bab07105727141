import pytest

from constants import MAILBOX_MAX_MESSAGES, MAILBOX_TTL_SECONDS, ROOM_TTL_SECONDS
from errors import RoomExists


@pytest.fixture(params=["memory", "redis"])
def backend(request, memory_store, redis_store):
    return memory_store if request.param == "memory" else redis_store


def test_message_is_delivered_once(backend):
    backend.push_message("K7QX2M", 2, {"type": "offer", "sdp": "x"})

    assert backend.pop_messages("K7QX2M", 2) == [{"type": "offer", "sdp": "x"}]
    assert backend.pop_messages("K7QX2M", 2) == []


def test_mailboxes_are_per_seat(backend):
    backend.push_message("K7QX2M", 2, {"type": "a"})
    backend.push_message("K7QX2M", 3, {"type": "b"})

    assert backend.pop_messages("K7QX2M", 3) == [{"type": "b"}]
    assert backend.pop_messages("K7QX2M", 2) == [{"type": "a"}]


def test_overflow_keeps_newest_in_order(backend):
    for i in range(MAILBOX_MAX_MESSAGES + 1):
        backend.push_message("K7QX2M", 1, {"type": "chat", "n": i})

    messages = backend.pop_messages("K7QX2M", 1)

    assert len(messages) == MAILBOX_MAX_MESSAGES
    assert [m["n"] for m in messages] == list(range(1, MAILBOX_MAX_MESSAGES + 1))


def test_create_room_twice_raises(backend):
    backend.create_room("K7QX2M", {"code": "K7QX2M", "seats": [1]})

    with pytest.raises(RoomExists):
        backend.create_room("K7QX2M", {"code": "K7QX2M", "seats": [1]})


def test_record_round_trip_keeps_types(backend):
    record = {"code": "222333", "host_token": "t", "seats": [1, 2], "seat_tokens": {"1": "t"}}
    backend.create_room("222333", record)

    assert backend.get_room("222333") == record


def test_update_room(backend):
    backend.create_room("K7QX2M", {"code": "K7QX2M", "seats": [1]})

    updated = backend.update_room("K7QX2M", lambda r: {**r, "seats": r["seats"] + [2]})

    assert updated["seats"] == [1, 2]
    assert backend.get_room("K7QX2M")["seats"] == [1, 2]


def test_update_missing_room_returns_none(backend):
    assert backend.update_room("ABCDEF", lambda r: r) is None


def test_update_aborts_when_mutator_raises(backend):
    backend.create_room("K7QX2M", {"code": "K7QX2M", "seats": [1]})

    def refuse(record):
        raise RuntimeError("no")

    with pytest.raises(RuntimeError):
        backend.update_room("K7QX2M", refuse)
    assert backend.get_room("K7QX2M")["seats"] == [1]


def test_delete_room(backend):
    backend.create_room("K7QX2M", {"code": "K7QX2M"})

    assert backend.delete_room("K7QX2M") is True
    assert backend.get_room("K7QX2M") is None
    assert backend.delete_room("K7QX2M") is False


def test_values_and_prefix_listing(backend):
    backend.set_value("roms:mario.nes", "AAAA")
    backend.set_value("roms:metroid.nes", "BBBB")
    backend.set_value("roms:zelda.nes", "CCCC")

    assert backend.get_value("roms:mario.nes") == "AAAA"
    assert backend.list_keys("roms:m") == ["roms:mario.nes", "roms:metroid.nes"]


def test_memory_mailbox_expires(memory_store, clock):
    memory_store.push_message("K7QX2M", 2, {"type": "offer"})

    clock.advance(MAILBOX_TTL_SECONDS + 1)

    assert memory_store.pop_messages("K7QX2M", 2) == []


def test_memory_room_expires_unless_touched(memory_store, clock):
    memory_store.create_room("AAAAAA", {"code": "AAAAAA"})
    memory_store.create_room("BBBBBB", {"code": "BBBBBB"})

    clock.advance(ROOM_TTL_SECONDS - 10)
    assert memory_store.touch_room("AAAAAA") is True
    clock.advance(20)

    assert memory_store.get_room("AAAAAA") is not None
    assert memory_store.get_room("BBBBBB") is None
    assert memory_store.touch_room("BBBBBB") is False


def test_expired_room_code_can_be_reused(memory_store, clock):
    memory_store.create_room("AAAAAA", {"code": "AAAAAA", "host_token": "old"})
    clock.advance(ROOM_TTL_SECONDS + 1)

    memory_store.create_room("AAAAAA", {"code": "AAAAAA", "host_token": "new"})

    assert memory_store.get_room("AAAAAA")["host_token"] == "new"


def test_redis_sets_ttls(redis_store):
    redis_store.create_room("K7QX2M", {"code": "K7QX2M"})
    redis_store.push_message("K7QX2M", 2, {"type": "offer"})

    client = redis_store.redis_client
    assert 0 < client.ttl("room:meta:K7QX2M") <= ROOM_TTL_SECONDS
    assert 0 < client.ttl("room:mailbox:K7QX2M:2") <= MAILBOX_TTL_SECONDS


def test_prefix_listing_treats_glob_characters_literally(backend):
    backend.set_value("roms:a*b.nes", "AAAA")
    backend.set_value("roms:axb.nes", "BBBB")
    backend.set_value("roms:[x].nes", "CCCC")

    assert backend.list_keys("roms:a*") == ["roms:a*b.nes"]
    assert backend.list_keys("roms:[x]") == ["roms:[x].nes"]
    assert backend.list_keys("roms:?") == []

import pytest

from constants import ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH, ROOM_TTL_SECONDS
from errors import InvalidRoomCode, RoomExists, RoomFull, RoomNotFound
from room_manager import generate_room_code, normalize_room_code


def test_generated_codes_use_the_unambiguous_alphabet():
    for _ in range(200):
        code = generate_room_code()
        assert len(code) == ROOM_CODE_LENGTH
        assert set(code) <= set(ROOM_CODE_ALPHABET)
        assert not set(code) & set("01IO")


def test_normalize_room_code():
    assert normalize_room_code(" k7qx2m ") == "K7QX2M"
    with pytest.raises(InvalidRoomCode):
        normalize_room_code("K7QX2")
    with pytest.raises(InvalidRoomCode):
        normalize_room_code("K7QX2O")


def test_create_room_makes_caller_host(manager):
    created = manager.create_room()

    assert created["seat"] == 1
    assert created["peer_token"]
    room = manager.get_room(created["room_code"])
    assert room.seats == [1]


def test_create_with_taken_code_raises(manager):
    manager.create_room("K7QX2M")

    with pytest.raises(RoomExists):
        manager.create_room("k7qx2m")


def test_generated_code_collision_retries(manager, monkeypatch):
    codes = iter(["AAAAAA", "AAAAAA"] + ["BBBBBB"] * 8)
    monkeypatch.setattr("room_manager.generate_room_code", lambda: next(codes))
    manager.create_room("AAAAAA")

    created = manager.create_room()

    assert created["room_code"] == "BBBBBB"


def test_joins_get_distinct_seats_until_full(manager):
    code = manager.create_room()["room_code"]

    seats = [manager.join_room(code)["seat"] for _ in range(3)]

    assert seats == [2, 3, 4]
    assert manager.get_room(code).seats == [1, 2, 3, 4]
    assert manager.get_room(code).is_full
    with pytest.raises(RoomFull):
        manager.join_room(code)


def test_join_returns_current_seats(manager):
    code = manager.create_room()["room_code"]
    manager.join_room(code)

    joined = manager.join_room(code.lower())

    assert joined["seat"] == 3
    assert joined["seats"] == [1, 2, 3]


def test_join_missing_room(manager):
    with pytest.raises(RoomNotFound):
        manager.join_room("ZZZZZZ")


def test_join_notifies_host(manager, memory_store):
    code = manager.create_room()["room_code"]

    manager.join_room(code)

    messages = memory_store.pop_messages(code, 1)
    assert [(m["type"], m["from_seat"], m["seat"]) for m in messages] == [("player-joined", 0, 2)]


def test_guest_seat_is_reused_after_leave(manager):
    code = manager.create_room()["room_code"]
    manager.join_room(code)
    manager.join_room(code)

    manager.leave_room(code, 2)

    assert manager.join_room(code)["seat"] == 2


def test_guest_leave_notifies_host(manager, memory_store):
    code = manager.create_room()["room_code"]
    manager.join_room(code)
    memory_store.pop_messages(code, 1)

    manager.leave_room(code, 2)

    messages = memory_store.pop_messages(code, 1)
    assert [(m["type"], m["seat"]) for m in messages] == [("player-left", 2)]
    assert manager.get_room(code).seats == [1]


def test_host_leave_closes_room(manager, memory_store):
    code = manager.create_room()["room_code"]
    manager.join_room(code)
    manager.join_room(code)

    manager.leave_room(code, 1)

    for guest in (2, 3):
        assert [m["type"] for m in memory_store.pop_messages(code, guest)] == ["room-closed"]
    with pytest.raises(RoomNotFound):
        manager.join_room(code)


def test_leave_is_idempotent(manager, memory_store):
    code = manager.create_room()["room_code"]
    manager.join_room(code)
    memory_store.pop_messages(code, 1)

    manager.leave_room(code, 2)
    manager.leave_room(code, 2)
    manager.leave_room(code, 3)
    manager.leave_room("ZZZZZZ", 2)
    manager.leave_room("bad", 2)

    assert [m["type"] for m in memory_store.pop_messages(code, 1)] == ["player-left"]


def test_join_clears_stale_mailbox(manager, memory_store):
    code = manager.create_room()["room_code"]
    memory_store.push_message(code, 2, {"type": "offer", "attempt": 1})

    manager.join_room(code)

    assert memory_store.pop_messages(code, 2) == []


def test_rejoin_keeps_seat(manager, memory_store):
    code = manager.create_room()["room_code"]
    token = manager.join_room(code)["peer_token"]
    memory_store.pop_messages(code, 1)

    rejoined = manager.rejoin_room(code, 2, token)

    assert rejoined["seat"] == 2
    assert rejoined["seats"] == [1, 2]
    messages = memory_store.pop_messages(code, 1)
    assert messages[0]["type"] == "player-joined"
    assert messages[0]["rejoined"] is True


def test_rejoin_reclaims_dropped_seat(manager):
    code = manager.create_room()["room_code"]
    token = manager.join_room(code)["peer_token"]
    manager.leave_room(code, 2)

    assert manager.rejoin_room(code, 2, token)["seats"] == [1, 2]


def test_rejoin_with_foreign_token_is_refused(manager):
    code = manager.create_room()["room_code"]
    manager.join_room(code)

    with pytest.raises(RoomFull):
        manager.rejoin_room(code, 2, "someone-else")


def test_rejoin_closed_room(manager):
    code = manager.create_room()["room_code"]
    token = manager.join_room(code)["peer_token"]
    manager.leave_room(code, 1)

    with pytest.raises(RoomNotFound):
        manager.rejoin_room(code, 2, token)


def test_relay_envelope_and_refresh(manager, memory_store, clock):
    code = manager.create_room()["room_code"]
    manager.join_room(code)

    clock.advance(ROOM_TTL_SECONDS - 5)
    manager.relay(code, 1, 2, {"type": "offer", "sdp": "v=0", "from_seat": 3})
    clock.advance(10)

    messages = manager.poll(code, 2)
    assert messages == [{"type": "offer", "sdp": "v=0", "from_seat": 1, "to_seat": 2}]
    assert manager.get_room(code) is not None


def test_room_expires_without_activity(manager, clock):
    code = manager.create_room()["room_code"]

    clock.advance(ROOM_TTL_SECONDS + 1)

    with pytest.raises(RoomNotFound):
        manager.join_room(code)

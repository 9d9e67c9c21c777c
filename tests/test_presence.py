from chat_relay.utils.presence import PresenceRegistry, user_room


def test_last_connect_wins():
    registry = PresenceRegistry()

    registry.register("u1", "sid-1")
    registry.register("u1", "sid-2")

    assert registry.lookup("u1") == "sid-2"
    assert len(registry) == 1


def test_stale_unregister_is_ignored():
    registry = PresenceRegistry()
    registry.register("u1", "sid-2")

    registry.unregister("u1", "sid-1")
    assert registry.is_online("u1")

    registry.unregister("u1", "sid-2")
    assert not registry.is_online("u1")
    assert registry.lookup("u1") is None


def test_unregister_unknown_user_is_noop():
    registry = PresenceRegistry()

    registry.unregister("ghost")
    registry.unregister("ghost", "sid-9")

    assert len(registry) == 0


def test_user_room_name():
    assert user_room("507f1f77bcf86cd799439011") == "user:507f1f77bcf86cd799439011"

from snapsend.discovery.registry import RegistryChangeKind


def test_register_same_stable_id_keeps_one_record(registry):
    registry.register("u1", "Laptop", "h1")
    registry.register("u1", "Laptop", "h2")

    known = registry.list_known()
    assert len(known) == 1
    assert known[0].handle == "h2"
    assert known[0].online is True


def test_register_refreshes_name(registry):
    registry.register("u1", "Old", "h1")
    device = registry.register("u1", "New", "h2")
    assert device.display_name == "New"
    assert registry.get("u1").display_name == "New"


def test_mark_offline_keeps_known_record(registry):
    registry.register("u1", "Laptop", "h1")
    device = registry.mark_offline("h1")

    assert device.online is False
    assert registry.list_online() == []
    assert [d.stable_id for d in registry.list_known()] == ["u1"]
    assert registry.mark_offline("h1") is None


def test_stale_handle_is_released_not_offline(registry):
    changes = []
    registry.on_change(changes.append)
    registry.register("u1", "Laptop", "h1")
    registry.register("u1", "Laptop", "h2")
    registry.mark_offline("h1")

    assert changes[-1].kind == RegistryChangeKind.RELEASED
    assert registry.get("u1").online is True
    assert registry.get("u1").handle == "h2"


def test_preferred_handle_survives_reconnect(registry):
    registry.prefer_handles(lambda handle: handle == "h1")
    registry.register("u1", "Laptop", "h1")
    registry.register("u1", "Laptop", "h2")

    assert registry.get("u1").handle == "h1"
    registry.mark_offline("h1")
    assert registry.get("u1").handle == "h2"


def test_handle_reused_by_another_device(registry):
    registry.register("u1", "Laptop", "h1")
    registry.register("u2", "Phone", "h1")

    assert registry.get("u1").online is False
    assert registry.get_by_handle("h1").stable_id == "u2"


def test_change_events(registry):
    changes = []
    registry.on_change(changes.append)
    registry.register("u1", "Laptop", "h1")
    registry.rename("u1", "Desk")
    registry.mark_offline("h1")

    assert [c.kind for c in changes] == [
        RegistryChangeKind.REGISTERED,
        RegistryChangeKind.RENAMED,
        RegistryChangeKind.OFFLINE,
    ]
    assert changes[0].previous_online == 0
    assert changes[0].online_count == 1
    assert changes[1].device.display_name == "Desk"
    assert changes[2].online_count == 0


def test_rename_unknown_device(registry):
    assert registry.rename("missing", "x") is None


def test_listener_errors_are_isolated(registry):
    seen = []

    def broken(change):
        raise RuntimeError("boom")

    registry.on_change(broken)
    registry.on_change(seen.append)
    registry.register("u1", "Laptop", "h1")
    assert len(seen) == 1


def test_offline_record_is_found_by_its_last_handle(registry):
    registry.register("u1", "Alice", "a")
    registry.mark_offline("a")

    assert registry.stable_id_for("a") is None
    assert registry.find_known_by_handle("a").stable_id == "u1"
    assert registry.find_known_by_handle("zzz") is None

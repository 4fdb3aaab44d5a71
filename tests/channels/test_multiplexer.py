from relayflow.channels import UpdateMultiplexer


def test_dispatch_reaches_listeners_in_registration_order() -> None:
    mux = UpdateMultiplexer()
    seen: list[tuple[str, object]] = []
    mux.add("chats", lambda data: seen.append(("first", data)))
    mux.add("chats", lambda data: seen.append(("second", data)))
    mux.add("chat_messages", lambda data: seen.append(("message", data)))

    delivered = mux.dispatch("chats", {"status": "busy"})

    assert delivered == 2
    assert seen == [("first", {"status": "busy"}), ("second", {"status": "busy"})]


def test_unknown_event_names_are_ignored() -> None:
    mux = UpdateMultiplexer()

    assert mux.dispatch("never-registered", {}) == 0
    assert not mux.has_listeners("never-registered")


def test_unsubscribe_removes_only_that_listener() -> None:
    mux = UpdateMultiplexer()
    seen: list[str] = []
    unsubscribe = mux.add("chats", lambda _data: seen.append("a"))
    mux.add("chats", lambda _data: seen.append("b"))

    unsubscribe()
    unsubscribe()
    mux.dispatch("chats", {})

    assert seen == ["b"]
    assert mux.event_names() == ["chats"]


def test_same_listener_registered_twice_runs_once() -> None:
    mux = UpdateMultiplexer()
    seen: list[object] = []
    mux.add("chats", seen.append)
    mux.add("chats", seen.append)

    mux.dispatch("chats", 1)

    assert seen == [1]


def test_should_continue_stops_remaining_listeners() -> None:
    mux = UpdateMultiplexer()
    live = {"value": True}
    seen: list[str] = []

    def first(_data: object) -> None:
        seen.append("first")
        live["value"] = False

    mux.add("chats", first)
    mux.add("chats", lambda _data: seen.append("second"))

    delivered = mux.dispatch("chats", {}, should_continue=lambda: live["value"])

    assert delivered == 1
    assert seen == ["first"]

"""Query cache tests — tuple-prefix invalidation and listeners."""

from ticketflow.client.cache import QueryCache, as_key


def test_as_key():
    assert as_key("/api/tasks") == ("/api/tasks",)
    assert as_key(["/api/teams", 3]) == ("/api/teams", 3)


def test_set_get():
    cache = QueryCache()
    cache.set("/api/tasks", [1, 2])
    assert cache.get("/api/tasks") == [1, 2]
    assert cache.get(("/api/tasks",)) == [1, 2]
    assert "/api/tasks" in cache
    assert cache.get("/missing", "default") == "default"
    assert len(cache) == 1


def test_prefix_invalidation():
    cache = QueryCache()
    cache.set(("/api/teams", 3), "team")
    cache.set(("/api/teams", 3, "members"), "members")
    cache.set(("/api/teams", 4, "members"), "other team")

    matched = cache.invalidate(("/api/teams", 3))

    assert set(matched) == {("/api/teams", 3), ("/api/teams", 3, "members")}
    assert not cache.is_stale(("/api/teams", 4, "members"))


def test_prefix_is_by_element_not_by_string():
    cache = QueryCache()
    cache.set("/api/tasks", [])
    cache.set("/api/tasks/42", {})
    cache.invalidate("/api/tasks")
    assert cache.is_stale("/api/tasks")
    assert not cache.is_stale("/api/tasks/42")


def test_exact_invalidation():
    cache = QueryCache()
    cache.set(("/api/teams", 3), "team")
    cache.set(("/api/teams", 3, "members"), "members")
    assert cache.invalidate(("/api/teams", 3), exact=True) == [("/api/teams", 3)]
    assert not cache.is_stale(("/api/teams", 3, "members"))


def test_invalidate_where():
    cache = QueryCache()
    cache.set(("/api/departments", 1, "stats"), {})
    cache.set(("/api/departments", 2, "stats"), {})
    cache.set(("/api/departments", 1, "teams"), {})
    matched = cache.invalidate_where(lambda k: len(k) > 2 and k[2] == "stats")
    assert len(matched) == 2


def test_set_clears_staleness():
    cache = QueryCache()
    cache.set("/api/users", [])
    cache.invalidate("/api/users")
    cache.set("/api/users", ["fresh"])
    assert not cache.is_stale("/api/users")


def test_listeners_get_matched_keys():
    cache = QueryCache()
    cache.set("/api/knowledge", [])
    calls = []
    unsubscribe = cache.subscribe(calls.append)

    cache.invalidate("/api/knowledge")
    cache.invalidate("/api/nothing-cached")
    assert calls == [[("/api/knowledge",)]]

    unsubscribe()
    cache.invalidate("/api/knowledge")
    assert len(calls) == 1

"""
Tests for the parallel profile aggregator.
"""

import asyncio
import json

import httpx
import pytest

from connectors.aggregator import FetchResponse, ProfileAggregator
from connectors.entities import EntitySpec, map_self_profile, resolve_settings
from connectors.errors import ConnectorError, FetchError, HandlerError

BASE = "https://graph.windows.net/example.com"

GRAPH_ME = {
    "objectId": "abc",
    "userPrincipalName": "u@x.com",
    "displayName": "U X",
    "givenName": "U",
    "surname": "X",
    "mail": "u@x.com",
}


# ── helpers ────────────────────────────────────────────────────────────────────


def _fake_fetch(routes, calls=None, delays=None):
    """
    Build a fetch that serves ``routes`` (path → payload or status int).
    Unknown paths answer 404.
    """
    delays = delays or {}

    async def fetch(uri, params):
        path = uri[len(BASE):]
        if calls is not None:
            calls.append((uri, dict(params)))
        if path in delays:
            await asyncio.sleep(delays[path])
        value = routes.get(path, 404)
        if isinstance(value, int):
            return FetchResponse(status_code=value)
        return FetchResponse(status_code=200, body=json.dumps(value).encode())

    return fetch


def _assign(key):
    def handler(profile, data):
        profile[key] = data

    return handler


def _collector():
    results = []
    return results, results.append


# ── Scenarios ──────────────────────────────────────────────────────────────────


class TestAggregationSuccess:
    @pytest.mark.asyncio
    async def test_empty_entities_completes_immediately(self):
        calls = []
        results, on_complete = _collector()

        await ProfileAggregator().run([], _fake_fetch({}, calls), BASE, {}, on_complete)

        assert results == [{}]
        assert calls == []

    @pytest.mark.asyncio
    async def test_empty_entities_from_settings(self):
        settings = resolve_settings({"tenant": "example.com", "requestMe": False})
        profile = await ProfileAggregator().aggregate(
            settings.entities, _fake_fetch({}), settings.resource_uri, settings.query_params
        )
        assert profile == {}

    @pytest.mark.asyncio
    async def test_self_profile(self):
        settings = resolve_settings({"tenant": "example.com"})
        results, on_complete = _collector()

        await ProfileAggregator().run(
            settings.entities,
            _fake_fetch({"/me": GRAPH_ME}),
            settings.resource_uri,
            settings.query_params,
            on_complete,
        )

        assert results == [
            {
                "id": "abc",
                "username": "u@x.com",
                "displayName": "U X",
                "email": "u@x.com",
                "name": {"first": "U", "last": "X"},
                "raw": GRAPH_ME,
            }
        ]

    @pytest.mark.asyncio
    async def test_property_entity_assigns_whole_payload(self):
        settings = resolve_settings(
            {"tenant": "example.com", "requestMe": False, "entities": [{"path": "/foo", "property": "bar"}]}
        )
        profile = await ProfileAggregator().aggregate(
            settings.entities, _fake_fetch({"/foo": {"foo": "foo"}}), settings.resource_uri
        )
        assert profile == {"bar": {"foo": "foo"}}

    @pytest.mark.asyncio
    async def test_mixed_entities_merge(self):
        def custom(profile, data):
            profile["custom"] = data
            profile["custom2"] = "test"

        settings = resolve_settings(
            {
                "tenant": "example.com",
                "entities": [
                    {"path": "/foo", "property": "bar"},
                    {"path": "/bar", "handler": custom},
                ],
            }
        )
        fetch = _fake_fetch(
            {"/me": GRAPH_ME, "/foo": {"foo": "foo"}, "/bar": {"bar": "foo"}},
            delays={"/me": 0.02, "/foo": 0.01},
        )
        profile = await ProfileAggregator().aggregate(
            settings.entities, fetch, settings.resource_uri, settings.query_params
        )

        assert profile["bar"] == {"foo": "foo"}
        assert profile["custom"] == {"bar": "foo"}
        assert profile["custom2"] == "test"
        assert profile["id"] == "abc"
        assert set(profile) == {
            "bar", "custom", "custom2", "id", "username", "displayName", "email", "name", "raw",
        }

    @pytest.mark.asyncio
    async def test_every_handler_runs_once(self):
        counts = {}

        def counting(key):
            def handler(profile, data):
                counts[key] = counts.get(key, 0) + 1
                profile[key] = data["n"]

            return handler

        entities = [EntitySpec(path=f"/e{i}", handler=counting(f"k{i}")) for i in range(20)]
        routes = {f"/e{i}": {"n": i} for i in range(20)}
        delays = {f"/e{i}": (20 - i) * 0.001 for i in range(20)}
        results, on_complete = _collector()

        await ProfileAggregator().run(entities, _fake_fetch(routes, delays=delays), BASE, {}, on_complete)

        assert len(results) == 1
        assert results[0] == {f"k{i}": i for i in range(20)}
        assert counts == {f"k{i}": 1 for i in range(20)}

    @pytest.mark.asyncio
    async def test_query_params_and_uri(self):
        calls = []
        entities = [
            EntitySpec(path="/me", handler=map_self_profile),
            EntitySpec(path="/with-params", handler=_assign("p"), params={"entityParam": "true"}),
        ]
        common = {"api-version": "1.6"}

        await ProfileAggregator().aggregate(
            entities,
            _fake_fetch({"/me": GRAPH_ME, "/with-params": {}}, calls),
            BASE,
            common,
            params_for=lambda e: {**common, **e.params},
        )

        by_uri = dict(calls)
        assert by_uri[f"{BASE}/me"] == {"api-version": "1.6"}
        assert by_uri[f"{BASE}/with-params"] == {"api-version": "1.6", "entityParam": "true"}

    @pytest.mark.asyncio
    async def test_empty_body_passes_none(self):
        seen = []

        async def fetch(uri, params):
            return FetchResponse(status_code=204)

        entities = [EntitySpec(path="/empty", handler=lambda profile, data: seen.append(data))]
        await ProfileAggregator().aggregate(entities, fetch, BASE)
        assert seen == [None]

    @pytest.mark.asyncio
    async def test_idempotent_across_runs(self):
        settings = resolve_settings(
            {"tenant": "example.com", "entities": [{"path": "/foo", "property": "bar"}]}
        )
        fetch = _fake_fetch({"/me": GRAPH_ME, "/foo": {"foo": "foo"}})
        aggregator = ProfileAggregator()

        first = await aggregator.aggregate(settings.entities, fetch, settings.resource_uri)
        second = await aggregator.aggregate(settings.entities, fetch, settings.resource_uri)

        assert first == second
        assert first is not second


class TestAggregationFailure:
    @pytest.mark.asyncio
    async def test_404_fails_aggregation(self):
        def custom(profile, data):
            profile["custom"] = data

        entities = [EntitySpec(path="/missing", handler=custom)]
        results, on_complete = _collector()

        await ProfileAggregator().run(entities, _fake_fetch({}), BASE, {}, on_complete)

        assert len(results) == 1
        assert isinstance(results[0], FetchError)
        assert results[0].status_code == 404
        assert results[0].path == "/missing"

    @pytest.mark.asyncio
    async def test_late_success_does_not_mutate_or_complete(self):
        late_calls = []

        def late_handler(profile, data):
            late_calls.append(data)
            profile["late"] = data

        entities = [
            EntitySpec(path="/slow", handler=late_handler),
            EntitySpec(path="/broken", handler=_assign("broken")),
        ]
        fetch = _fake_fetch({"/slow": {"ok": True}, "/broken": 500}, delays={"/slow": 0.05})
        results, on_complete = _collector()

        await ProfileAggregator().run(entities, fetch, BASE, {}, on_complete)
        await asyncio.sleep(0.1)

        assert len(results) == 1
        assert isinstance(results[0], FetchError)
        assert late_calls == []

    @pytest.mark.asyncio
    async def test_aggregate_raises_fetch_error(self):
        entities = [EntitySpec(path="/me", handler=map_self_profile)]
        with pytest.raises(FetchError, match="unexpected status 403"):
            await ProfileAggregator().aggregate(entities, _fake_fetch({"/me": 403}), BASE)

    @pytest.mark.asyncio
    async def test_transport_error_is_fetch_error(self):
        async def fetch(uri, params):
            raise httpx.ConnectError("connection refused")

        entities = [EntitySpec(path="/me", handler=map_self_profile)]
        with pytest.raises(FetchError, match="transport error"):
            await ProfileAggregator().aggregate(entities, fetch, BASE)

    @pytest.mark.asyncio
    async def test_timeout_is_fetch_error(self):
        async def fetch(uri, params):
            raise asyncio.TimeoutError()

        entities = [EntitySpec(path="/me", handler=map_self_profile)]
        with pytest.raises(FetchError, match="timed out"):
            await ProfileAggregator().aggregate(entities, fetch, BASE)

    @pytest.mark.asyncio
    async def test_invalid_json_is_fetch_error(self):
        async def fetch(uri, params):
            return FetchResponse(status_code=200, body=b"<html>")

        entities = [EntitySpec(path="/me", handler=map_self_profile)]
        with pytest.raises(FetchError, match="invalid JSON"):
            await ProfileAggregator().aggregate(entities, fetch, BASE)

    @pytest.mark.asyncio
    async def test_handler_exception_is_handler_error(self):
        def boom(profile, data):
            raise KeyError("objectId")

        entities = [EntitySpec(path="/me", handler=boom)]
        results, on_complete = _collector()

        await ProfileAggregator().run(entities, _fake_fetch({"/me": GRAPH_ME}), BASE, {}, on_complete)

        assert len(results) == 1
        assert isinstance(results[0], HandlerError)
        assert isinstance(results[0].cause, KeyError)
        assert isinstance(results[0], ConnectorError)

    @pytest.mark.asyncio
    async def test_plain_tuple_result_is_accepted(self):
        async def fetch(uri, params):
            return (200, b'{"a": 1}')

        entities = [EntitySpec(path="/a", handler=_assign("a"))]
        results, on_complete = _collector()

        await ProfileAggregator().run(entities, fetch, BASE, {}, on_complete)

        assert results == [{"a": {"a": 1}}]

    @pytest.mark.asyncio
    async def test_malformed_fetch_result_is_fetch_error(self):
        async def fetch(uri, params):
            return object()

        entities = [EntitySpec(path="/me", handler=map_self_profile)]
        results, on_complete = _collector()

        await ProfileAggregator().run(entities, fetch, BASE, {}, on_complete)

        assert len(results) == 1
        assert isinstance(results[0], FetchError)
        assert "malformed fetch result" in str(results[0])

    @pytest.mark.asyncio
    async def test_unexpected_exception_still_completes_once(self):
        def params_for(entity):
            raise KeyError("api-version")

        entities = [EntitySpec(path="/me", handler=map_self_profile)]
        results, on_complete = _collector()

        await ProfileAggregator().run(
            entities, _fake_fetch({"/me": GRAPH_ME}), BASE, {}, on_complete, params_for=params_for
        )

        assert len(results) == 1
        assert isinstance(results[0], ConnectorError)
        assert isinstance(results[0].__cause__, KeyError)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_fetches_run_in_parallel(self):
        in_flight = 0
        peak = 0

        async def fetch(uri, params):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return FetchResponse(status_code=200, body=b"{}")

        entities = [EntitySpec(path=f"/e{i}", handler=_assign(f"k{i}")) for i in range(5)]
        await ProfileAggregator().aggregate(entities, fetch, BASE)
        assert peak == 5

    @pytest.mark.asyncio
    async def test_concurrency_is_capped(self):
        in_flight = 0
        peak = 0

        async def fetch(uri, params):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return FetchResponse(status_code=200, body=b"{}")

        entities = [EntitySpec(path=f"/e{i}", handler=_assign(f"k{i}")) for i in range(10)]
        profile = await ProfileAggregator(max_concurrency=3).aggregate(entities, fetch, BASE)
        assert peak == 3
        assert len(profile) == 10

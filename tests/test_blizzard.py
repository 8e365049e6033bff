# tests/test_blizzard.py

import asyncio
import time

import aiohttp
import pytest

from cmstats.blizzard import (
    MAX_RATE_LIMIT_WAITS,
    BlizzardClient,
    get_access_token,
    parse_member,
    parse_retry_after,
)
from cmstats.config import Config
from cmstats.errors import APIError, AuthError, RateLimitExceeded
from tests.helpers import FakeResponse, FakeSession, SlowSession, dungeon_info, realm_info

URL = "https://us.api.blizzard.com/anything"


def make_client(responses=None, default=None, max_attempts=3, tokens=None):
    session = FakeSession(responses, default)
    issued = tokens if tokens is not None else []

    def token_provider(region):
        issued.append(region)
        return f"token-{len(issued)}"

    client = BlizzardClient(Config(max_attempts=max_attempts), session=session, token_provider=token_provider)
    client.backoff = 0
    return client, session


class TestGetJson:
    def test_success(self):
        client, session = make_client([FakeResponse(200, {"ok": True})])
        assert asyncio.run(client.get_json(URL, "us")) == {"ok": True}
        assert session.calls == [URL]
        assert client.metrics["200"] == 1

    def test_server_error_retried(self):
        client, session = make_client([FakeResponse(502, body="bad gateway"), FakeResponse(200, {"n": 1})])
        assert asyncio.run(client.get_json(URL, "us")) == {"n": 1}
        assert len(session.calls) == 2
        assert client.metrics["5xx"] == 1

    def test_gives_up_after_max_attempts(self):
        client, session = make_client(default=FakeResponse(500, body="boom"), max_attempts=3)
        with pytest.raises(APIError) as exc:
            asyncio.run(client.get_json(URL, "us"))
        assert exc.value.status == 500
        assert len(session.calls) == 3

    def test_not_found_not_retried(self):
        client, session = make_client(default=FakeResponse(404, body="missing"))
        with pytest.raises(APIError) as exc:
            asyncio.run(client.get_json(URL, "us"))
        assert exc.value.is_not_found
        assert len(session.calls) == 1

    def test_client_error_not_retried(self):
        client, session = make_client(default=FakeResponse(400, body="bad request"))
        with pytest.raises(APIError) as exc:
            asyncio.run(client.get_json(URL, "us"))
        assert exc.value.status == 400
        assert len(session.calls) == 1

    def test_rate_limit_does_not_consume_attempts(self):
        client, session = make_client(
            [
                FakeResponse(429, headers={"Retry-After": "0"}),
                FakeResponse(429, headers={"Retry-After": "0"}),
                FakeResponse(200, {"done": True}),
            ],
            max_attempts=1,
        )
        assert asyncio.run(client.get_json(URL, "us")) == {"done": True}
        assert client.metrics["429"] == 2

    def test_rate_limit_gives_up(self):
        client, session = make_client(default=FakeResponse(429, headers={"Retry-After": "0"}))
        with pytest.raises(RateLimitExceeded):
            asyncio.run(client.get_json(URL, "us"))
        assert len(session.calls) == MAX_RATE_LIMIT_WAITS + 1

    def test_unauthorized_refreshes_token_once(self):
        tokens = []
        client, session = make_client(
            [FakeResponse(401, body="expired"), FakeResponse(200, {"ok": 1})], tokens=tokens
        )
        assert asyncio.run(client.get_json(URL, "us")) == {"ok": 1}
        assert tokens == ["us", "us"]

    def test_transport_errors_retried(self):
        client, session = make_client([aiohttp.ClientConnectionError("reset"), FakeResponse(200, {"x": 1})])
        assert asyncio.run(client.get_json(URL, "us")) == {"x": 1}
        assert client.metrics["exceptions"] == 1

    def test_token_cached_per_region(self):
        tokens = []
        client, _ = make_client(default=FakeResponse(200, {}), tokens=tokens)

        async def calls():
            await client.get_json(URL, "us")
            await client.get_json(URL, "us")
            await client.get_json(URL, "eu")

        asyncio.run(calls())
        assert tokens == ["us", "eu"]

    def test_concurrent_unauthorized_refresh_once(self):
        tokens = []
        client, session = make_client([FakeResponse(401, body="expired")] * 5, tokens=tokens)

        async def calls():
            return await asyncio.gather(*(client.get_json(URL, "us") for _ in range(5)))

        assert len(asyncio.run(calls())) == 5
        assert tokens == ["us", "us"]
        assert len(session.calls) == 10


class TestFanOut:
    REALMS = {f"realm{i}": realm_info(slug=f"realm{i}", rid=i) for i in range(10)}
    DUNGEONS = [dungeon_info(i, f"dungeon-{i}") for i in range(1, 10)]

    def slow_client(self, concurrency, tokens=None, delay=0.01):
        session = SlowSession(delay=delay)
        issued = tokens if tokens is not None else []

        def token_provider(region):
            time.sleep(0.01)
            issued.append(region)
            return "token"

        return BlizzardClient(Config(concurrency=concurrency), session=session,
                              token_provider=token_provider), session

    def test_one_token_exchange_per_region(self):
        tokens = []
        client, _ = self.slow_client(50, tokens)

        async def collect():
            return [r async for r in client.fetch_all_realms(self.REALMS, self.DUNGEONS, "1020")]

        assert len(asyncio.run(collect())) == 90
        assert tokens == ["us"]

    def test_in_flight_requests_bounded(self):
        client, session = self.slow_client(3)

        async def collect():
            return [r async for r in client.fetch_all_realms(self.REALMS, self.DUNGEONS[:2], "1020")]

        assert len(asyncio.run(collect())) == 20
        assert session.peak == 3
        assert session.in_flight == 0

    def test_closing_stream_cancels_pending(self):
        client, session = self.slow_client(2, delay=0.05)

        async def first_then_close():
            stream = client.fetch_all_realms(self.REALMS, self.DUNGEONS, "1020")
            first = await stream.__anext__()
            await stream.aclose()
            leftover = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
            return first, leftover

        first, leftover = asyncio.run(first_then_close())
        assert first.ok
        assert leftover == []
        assert session.in_flight == 0
        assert len(session.calls) < 90


class TestEndpoints:
    def test_fetch_all_realms_yields_every_pair(self):
        client, session = make_client(
            [FakeResponse(404, body="none")], default=FakeResponse(200, {"leading_groups": []})
        )
        realms = {
            "pagle": realm_info(slug="pagle", rid=10),
            "atiesh": realm_info(slug="atiesh", rid=11),
        }
        dungeons = [dungeon_info(1), dungeon_info(2, "dungeon-2"), dungeon_info(3, "dungeon-3")]

        async def collect():
            return [r async for r in client.fetch_all_realms(realms, dungeons, "1020")]

        results = asyncio.run(collect())
        assert len(results) == 6
        assert sum(1 for r in results if r.not_found) == 1
        assert sum(1 for r in results if r.ok) == 5
        assert all(r.period == "1020" for r in results)
        assert any("/connected-realm/10/mythic-leaderboard/1/period/1020" in url for url in session.calls)

    def test_character_url_normalized(self):
        client, session = make_client(default=FakeResponse(200, {}))
        asyncio.run(client.fetch_character_status("Élodie", "arugal", "us"))
        assert "/profile/wow/character/arugal-au/%C3%A9lodie/status" in session.calls[0]
        assert "namespace=profile-classic-us" in session.calls[0]

    def test_dynamic_period_list(self):
        client, _ = make_client([
            FakeResponse(200, {"seasons": [{"id": 1}, {"id": 2}]}),
            FakeResponse(200, {"periods": [{"id": 1020}, {"id": 1021}]}),
            FakeResponse(200, {"periods": [{"id": 1021}, {"id": 1030}]}),
        ])
        assert asyncio.run(client.get_dynamic_period_list("us")) == ["1030", "1021", "1020"]

    def test_summary(self):
        client, _ = make_client(default=FakeResponse(200, {}))
        asyncio.run(client.get_json(URL, "us"))
        assert client.summary().startswith("total=1 | 200=1")


class TestParsing:
    def test_retry_after(self):
        assert parse_retry_after("5") == 5.0
        assert parse_retry_after(None) is None
        assert parse_retry_after("soon") is None
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0

    def test_nested_member(self):
        raw = {
            "profile": {"id": 9, "name": "Nine", "realm": {"slug": "pagle"}},
            "specialization": {"id": 250},
            "faction": {"type": "HORDE"},
        }
        assert parse_member(raw) == {
            "id": 9, "name": "Nine", "realm_slug": "pagle", "spec_id": 250, "faction": "HORDE",
        }

    def test_member_without_id(self):
        assert parse_member({"profile": {"name": "ghost"}}) is None


class TestAccessToken:
    def test_static_token(self, monkeypatch):
        monkeypatch.setenv("BLIZZARD_API_TOKEN", "static")
        assert get_access_token("us") == "static"

    def test_missing_credentials(self, monkeypatch):
        for var in ("BLIZZARD_API_TOKEN", "BLIZZARD_CLIENT_ID", "BLIZZARD_CLIENT_SECRET",
                    "BLIZZARD_CLIENT_ID_US", "BLIZZARD_CLIENT_SECRET_US"):
            monkeypatch.delenv(var, raising=False)
        with pytest.raises(AuthError):
            get_access_token("us")

import asyncio

from aiohttp import test_utils, web

import gameprobe
from gameprobe.cache import ResultCache
from gameprobe.fallback import HttpStatusClient, parse_aggregator_status
from gameprobe.models import ConnStatus

from fakes import FakeClock, RecordingSleep

JAVA_DOC = {
    "online": True,
    "host": "mc.example.org",
    "port": 25565,
    "version": {"name_raw": "§a1.20.4", "name_clean": "1.20.4", "protocol": 765},
    "players": {
        "online": 3,
        "max": 20,
        "list": [
            {
                "uuid": "4566e69f-c907-48ee-8d71-d7ba5aa00d20",
                "name_raw": "thinkofdeath",
                "name_clean": "thinkofdeath",
            }
        ],
    },
    "motd": {"raw": "§6Hello\n§7World", "clean": "Hello\nWorld"},
    "icon": "data:image/png;base64,iVBORw0KGgo=",
}

BEDROCK_DOC = {
    "online": True,
    "version": {"name": "1.20.40", "protocol": 622},
    "players": {"online": 1, "max": 10},
    "motd": {"raw": "§bBedrock", "clean": "Bedrock"},
    "gamemode": "Survival",
}


class FakeApi:
    """
    Serves scripted `(status, payload, delay)` replies, repeating the last one.

    A dict payload is sent as JSON, anything else as plain text.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests = []

    async def handle(self, request):
        self.requests.append(
            (
                request.match_info["edition"],
                request.match_info["target"],
                request.headers.get("User-Agent"),
            )
        )
        status, payload, delay = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if delay:
            await asyncio.sleep(delay)
        if isinstance(payload, dict):
            return web.json_response(payload, status=status)
        return web.Response(status=status, text=payload)


def ok(payload=JAVA_DOC, delay=0):
    return 200, payload, delay


def failing(status=500):
    return status, "Internal Server Error", 0


def run_against(api, scenario, **client_kwargs):
    async def main():
        app = web.Application()
        app.router.add_get("/v2/status/{edition}/{target}", api.handle)
        async with test_utils.TestServer(app) as server:
            client_kwargs.setdefault("sleep", RecordingSleep())
            client = HttpStatusClient(base_url=str(server.make_url("")), **client_kwargs)
            async with client:
                return await scenario(client)

    return asyncio.run(main())


class TestUrls:
    client = HttpStatusClient(base_url="https://api.example/")

    def test_default_port_is_omitted(self):
        assert self.client.build_url("mc.example.org", 25565) == (
            "https://api.example/v2/status/java/mc.example.org"
        )
        assert self.client.build_url("b.example", 19132, bedrock=True) == (
            "https://api.example/v2/status/bedrock/b.example"
        )

    def test_other_ports_are_kept(self):
        assert self.client.build_url("mc.example.org", 25566) == (
            "https://api.example/v2/status/java/mc.example.org%3A25566"
        )
        assert self.client.build_url("b.example", 25565, bedrock=True) == (
            "https://api.example/v2/status/bedrock/b.example%3A25565"
        )

    def test_linear_backoff(self):
        assert [self.client.retry_delay(n) for n in (1, 2, 3)] == [2, 4, 6]


class TestParseAggregatorStatus:
    def test_java_document(self):
        result = parse_aggregator_status(JAVA_DOC)
        assert result.online
        assert result.status is ConnStatus.SUCCESS
        assert (result.version.raw, result.version.clean, result.version.protocol) == (
            "§a1.20.4",
            "1.20.4",
            765,
        )
        assert result.player_count == "3/20"
        assert result.players.sample[0].name == "thinkofdeath"
        assert result.motd.raw == ("§6Hello", "§7World")
        assert result.motd.clean == ("Hello", "World")
        assert result.icon == JAVA_DOC["icon"]

    def test_bedrock_document(self):
        result = parse_aggregator_status(BEDROCK_DOC)
        assert result.version.raw == result.version.clean == "1.20.40"
        assert result.players.sample == ()
        assert result.motd.clean == ("Bedrock",)
        assert result.gamemode == "Survival"

    def test_offline_document(self):
        result = parse_aggregator_status({"online": False})
        assert not result.online
        assert result.status is ConnStatus.CONNFAIL
        assert not result.has_data


class TestHttpStatusClient:
    def test_success_is_cached(self):
        api = FakeApi(ok())

        async def scenario(client):
            return await client.get_status("mc.example.org"), await client.get_status("mc.example.org")

        first, second = run_against(api, scenario)
        assert first.online
        assert first.players.online == 3
        assert second is first
        assert api.requests == [("java", "mc.example.org", HttpStatusClient.USER_AGENT)]

    def test_bedrock_with_explicit_port(self):
        api = FakeApi(ok(BEDROCK_DOC))

        async def scenario(client):
            return await client.get_status("b.example", 19133, bedrock=True)

        result = run_against(api, scenario)
        assert result.gamemode == "Survival"
        assert api.requests[0][:2] == ("bedrock", "b.example:19133")

    def test_retries_with_linear_backoff(self):
        api = FakeApi(failing())
        sleep = RecordingSleep()

        async def scenario(client):
            return await client.get_status("mc.example.org")

        result = run_against(api, scenario, sleep=sleep)
        assert sleep.delays == [2, 4, 6]
        assert len(api.requests) == 4
        assert not result.online
        assert result.status is ConnStatus.CONNFAIL
        assert result.error == "API returned 500"

    def test_recovers_after_failures(self):
        api = FakeApi(failing(), failing(503), ok())
        sleep = RecordingSleep()

        async def scenario(client):
            return await client.get_status("mc.example.org")

        result = run_against(api, scenario, sleep=sleep)
        assert result.online
        assert sleep.delays == [2, 4]

    def test_invalid_json(self):
        api = FakeApi((200, "not json", 0))

        async def scenario(client):
            return await client.get_status("mc.example.org")

        result = run_against(api, scenario, max_retries=0)
        assert not result.online
        assert "invalid JSON" in result.error

    def test_slow_api_times_out(self):
        api = FakeApi(ok(delay=0.3))

        async def scenario(client):
            return await client.get_status("mc.example.org")

        result = run_against(api, scenario, max_retries=1, request_timeout=0.05)
        assert not result.online
        assert result.error == "Request timed out after 0.05s"

    def test_serves_stale_data_when_the_api_fails(self):
        clock = FakeClock()
        api = FakeApi(ok(), failing())

        async def scenario(client):
            first = await client.get_status("mc.example.org")
            clock.advance(61)
            return first, await client.get_status("mc.example.org")

        first, second = run_against(
            api, scenario, cache=ResultCache(ResultCache.FALLBACK_TTL, clock=clock)
        )
        assert first.online
        assert not second.online
        assert second.stale
        assert second.error == "Using stale data"
        assert second.players.online == 3
        assert second.captured_at == first.captured_at

    def test_get_multiple(self):
        api = FakeApi(ok())
        servers = [(f"s{i}.example", 25565, False) for i in range(6)] + [("b.example", 19132, True)]

        async def scenario(client):
            return await client.get_multiple(servers)

        results = run_against(api, scenario)
        assert set(results) == {f"s{i}.example:25565" for i in range(6)} | {"b.example:19132"}
        assert all(result.online for result in results.values())
        assert len(api.requests) == 7
        assert ("bedrock", "b.example") in {request[:2] for request in api.requests}

    def test_any_2xx_response_is_accepted(self):
        api = FakeApi((203, JAVA_DOC, 0))
        sleep = RecordingSleep()

        async def scenario(client):
            return await client.get_status("mc.example.org")

        result = run_against(api, scenario, sleep=sleep)
        assert result.online
        assert sleep.delays == []
        assert len(api.requests) == 1


def test_user_agent_carries_the_package_version():
    assert HttpStatusClient.USER_AGENT == f"gameprobe/{gameprobe.VERSION}"

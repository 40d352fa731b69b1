import asyncio

import pytest

import raysnipe.http as http_mod


class FakeResponse:
    def __init__(self, status, body):
        self.status = status
        self.body = body

    async def text(self):
        return self.body.decode()

    async def read(self):
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        return self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]

    async def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def _fresh_hosts():
    http_mod.reset_host_controllers()
    yield
    http_mod.reset_host_controllers()


def _patch_session(monkeypatch, session):
    async def get_session():
        return session

    monkeypatch.setattr(http_mod, "get_session", get_session)


def test_dumps_loads_round_trip():
    assert http_mod.loads(http_mod.dumps({"a": 1})) == {"a": 1}


@pytest.mark.asyncio
async def test_get_session_singleton():
    await http_mod.close_session()
    s1 = await http_mod.get_session()
    s2 = await http_mod.get_session()
    assert s1 is s2
    await http_mod.close_session()
    assert s1.closed


def test_fetch_json_retries_server_errors(monkeypatch):
    session = FakeSession(FakeResponse(503, b"busy"), FakeResponse(200, b'{"ok": true}'))
    _patch_session(monkeypatch, session)

    result = asyncio.run(http_mod.fetch_json("https://index.test/x", attempts=3, backoff=0))
    assert result == {"ok": True}
    assert len(session.requests) == 2


def test_fetch_json_raises_last_error(monkeypatch):
    session = FakeSession(FakeResponse(404, b"missing"))
    _patch_session(monkeypatch, session)

    with pytest.raises(http_mod.HTTPError) as err:
        asyncio.run(http_mod.fetch_json("https://index.test/x", attempts=2, backoff=0))
    assert err.value.status == 404
    assert len(session.requests) == 2


def test_host_circuit_opens_after_failures():
    async def fail():
        async with http_mod.host_request("https://flaky.test/api"):
            raise RuntimeError("boom")

    async def run():
        for _ in range(5):
            with pytest.raises(RuntimeError):
                await fail()
        with pytest.raises(http_mod.HostCircuitOpenError):
            async with http_mod.host_request("https://flaky.test/api"):
                pass
        async with http_mod.host_request("https://other.test/api"):
            pass

    asyncio.run(run())


def test_host_retry_config():
    assert http_mod.host_retry_config("https://api.dexscreener.com/latest") == (3, 0.5)
    assert http_mod.host_retry_config("not a url") == (1, 0.0)


def test_http_client_owns_its_session_and_guards(monkeypatch):
    async def shared_session():
        raise AssertionError("shared session used")

    monkeypatch.setattr(http_mod, "get_session", shared_session)
    down, up = http_mod.HttpClient(), http_mod.HttpClient()
    down_session = FakeSession(FakeResponse(503, b"down"))
    down._session = down_session
    up._session = FakeSession(FakeResponse(200, b'{"ok": true}'))

    async def run():
        for _ in range(5):
            with pytest.raises(http_mod.HTTPError):
                await http_mod.fetch_json("https://flaky.test/x", attempts=1, client=down)
        with pytest.raises(http_mod.HostCircuitOpenError):
            await http_mod.fetch_json("https://flaky.test/x", attempts=1, client=down)
        async with http_mod.host_request("https://flaky.test/x"):
            pass
        result = await http_mod.fetch_json("https://flaky.test/x", attempts=1, client=up)
        await down.close()
        return result

    assert asyncio.run(run()) == {"ok": True}
    assert len(down_session.requests) == 5
    assert down_session.closed

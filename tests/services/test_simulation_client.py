import aiohttp
import pytest

from services.simulation_client import TenderlySimulationClient


class FakeResponse:
    def __init__(self, payload, fail=False):
        self._payload = payload
        self._fail = fail

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def raise_for_status(self):
        if self._fail:
            raise aiohttp.ClientError("503 Service Unavailable")

    async def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.posted = []

    def post(self, url, json, headers=None, timeout=None):
        if not self._responses:
            raise AssertionError("No more fake responses configured")
        self.posted.append((url, json, headers))
        return self._responses.pop(0)


TX = {"from": "0x" + "11" * 20, "to": "0x" + "22" * 20, "data": "0x12aa3caf", "value": 0, "gas": 250000}


def _client(responses, **overrides):
    kwargs = dict(account="acme", project="arb", access_key="secret")
    kwargs.update(overrides)
    return TenderlySimulationClient(FakeSession(responses), **kwargs)


@pytest.mark.asyncio
async def test_unconfigured_client_skips():
    client = _client([], access_key=None)
    result = await client.simulate("polygon", TX)
    assert result.success is True
    assert result.skipped is True


@pytest.mark.asyncio
async def test_successful_simulation():
    client = _client([FakeResponse({"transaction": {"status": True, "gas_used": 145000}})])

    result = await client.simulate("polygon", TX)

    assert result.success is True
    assert result.gas_used == 145000
    url, payload, headers = client.session.posted[0]
    assert url.endswith("/account/acme/project/arb/simulate")
    assert payload["network_id"] == "137"
    assert payload["input"] == "0x12aa3caf"
    assert headers["X-Access-Key"] == "secret"


@pytest.mark.asyncio
async def test_reverted_simulation():
    client = _client([FakeResponse({"transaction": {"status": False, "gas_used": 50000, "error_message": "Return amount is not enough"}})])
    result = await client.simulate("polygon", TX)
    assert result.success is False
    assert result.revert_reason == "Return amount is not enough"


@pytest.mark.asyncio
async def test_service_outage_is_reported_not_raised():
    client = _client([FakeResponse({}, fail=True)])
    result = await client.simulate("polygon", TX)
    assert result.success is True
    assert result.error == "simulation_unavailable"


@pytest.mark.asyncio
async def test_unexpected_payload():
    client = _client([FakeResponse({"unexpected": True})])
    result = await client.simulate("polygon", TX)
    assert result.success is True
    assert result.error.startswith("unexpected_response")

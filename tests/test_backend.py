import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from docuscan.api.backend import BackendClient
from docuscan.core.analysis import ParsedAnalysis
from docuscan.core.errors import BackendError

PARSED = ParsedAnalysis.from_dict({
    "sender": "Belastingdienst",
    "type": "assessment",
    "summary_ua": "Tax assessment",
    "deadline": "2026-04-01",
    "amount": 120,
})


def serve(routes, scenario):
    """Run `scenario(base_url, seen)` against an aiohttp app built from `routes`."""
    seen = []

    def record(handler):
        async def wrapped(request):
            body = await request.json() if request.can_read_body else None
            seen.append((request.method, request.path, body))
            return await handler(request)
        return wrapped

    async def main():
        app = web.Application()
        for method, path, handler in routes:
            app.router.add_route(method, path, record(handler))
        async with TestServer(app) as server:
            return await scenario(str(server.make_url("/")), seen)

    return asyncio.run(main()), seen


def test_notify_scan_created_posts_language():
    async def create(request):
        return web.json_response({"id": 7})

    async def scenario(url, seen):
        async with BackendClient(url) as client:
            return await client.notify_scan_created("en")

    result, seen = serve([("POST", "/scans", create)], scenario)

    assert result == {"id": 7}
    assert seen == [("POST", "/scans", {"language": "en"})]


def test_notify_without_backend_is_skipped():
    assert asyncio.run(BackendClient(None).notify_scan_created("uk")) is None


def test_notify_failure_is_swallowed():
    async def broken(request):
        return web.Response(status=503, text="maintenance")

    async def scenario(url, seen):
        async with BackendClient(url) as client:
            return await client.notify_scan_created("uk")

    result, seen = serve([("POST", "/scans", broken)], scenario)
    assert result is None
    assert len(seen) == 1


def test_generate_response_letter():
    async def generate(request):
        return web.json_response({"response": "Geachte heer/mevrouw, ..."})

    async def scenario(url, seen):
        async with BackendClient(url) as client:
            return await client.generate_response_letter("scan-9", PARSED)

    text, seen = serve([("POST", "/api/scans/{scan_id}/generate-response", generate)], scenario)

    assert text.startswith("Geachte")
    method, path, body = seen[0]
    assert path == "/api/scans/scan-9/generate-response"
    assert body["analysis"]["sender"] == "Belastingdienst"


def test_http_errors_are_not_retried():
    async def missing(request):
        return web.Response(status=404, text="no such scan")

    async def scenario(url, seen):
        async with BackendClient(url) as client:
            with pytest.raises(BackendError) as excinfo:
                await client.generate_response_letter("scan-9", PARSED)
            return excinfo.value

    error, seen = serve([("POST", "/api/scans/{scan_id}/generate-response", missing)], scenario)
    assert error.status == 404
    assert len(seen) == 1


def test_generate_without_backend_url_raises():
    with pytest.raises(BackendError, match="not configured"):
        asyncio.run(BackendClient(None).generate_response_letter("scan-9", PARSED))


def test_request_reply_template_sends_letter_fields():
    async def webhook(request):
        return web.json_response({"data": {"content": [{"text": "Verzoek om uitstel"}]}})

    async def scenario(url, seen):
        async with BackendClient(None, webhook_url=url + "hook", webhook_token="secret") as client:
            return await client.request_reply_template("uitstel", PARSED)

    text, seen = serve([("POST", "/hook", webhook)], scenario)

    assert text == "Verzoek om uitstel"
    body = seen[0][2]
    assert body["token"] == "secret"
    assert body["template_type"] == "uitstel"
    assert body["sender"] == "Belastingdienst"
    assert body["summary_ua"] == "Tax assessment"
    assert body["amount"] == 120.0


def test_reply_template_with_unexpected_shape():
    async def webhook(request):
        return web.json_response({"ok": True})

    async def scenario(url, seen):
        async with BackendClient(None, webhook_url=url + "hook") as client:
            with pytest.raises(BackendError, match="Unexpected webhook response"):
                await client.request_reply_template("bezwaar", PARSED)

    serve([("POST", "/hook", webhook)], scenario)


def test_unknown_reply_template_is_rejected():
    client = BackendClient(None, webhook_url="http://localhost/hook")
    with pytest.raises(ValueError):
        asyncio.run(client.request_reply_template("complaint", PARSED))


def test_reply_template_needs_webhook():
    with pytest.raises(BackendError, match="webhook URL not configured"):
        asyncio.run(BackendClient(None).request_reply_template("uitstel", PARSED))

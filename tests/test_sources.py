import asyncio
import json

import httpx
import pytest

from linkstash.errors import EnrichmentMiss
from linkstash.sources import (
    IconListSource,
    PageIconSource,
    TitleSource,
    build_favicon_sources,
    extract_icon_urls,
    extract_title,
    pick_largest_icon,
)


def test_extract_title_decodes_entities_and_whitespace():
    html = b"<html><head><title>\n  Tom &amp; Jerry&nbsp;&#x2F; &quot;Cats&quot; &#39;n&#x27; &lt;Mice&gt;\n</title></head></html>"
    assert extract_title(html) == "Tom & Jerry / \"Cats\" 'n' <Mice>"


def test_extract_title_missing_or_blank():
    assert extract_title(b"<html><head></head><body>hi</body></html>") is None
    assert extract_title(b"<html><head><title>   </title></head></html>") is None
    assert extract_title(b"") is None


def test_extract_icons_prefers_icon_links_and_resolves_relative():
    html = b"""
    <html><head>
      <meta property="og:image" content="/social.png">
      <link rel="apple-touch-icon" href="/apple-180.png">
      <link rel="stylesheet" href="/site.css">
      <link rel="icon" href="assets/favicon-32.png">
    </head></html>
    """
    got = extract_icon_urls(html, base_url="https://example.com/a/b")
    assert got == [
        "https://example.com/a/assets/favicon-32.png",
        "https://example.com/apple-180.png",
        "https://example.com/social.png",
    ]


def test_extract_icons_honours_base_href_and_skips_data_uris():
    html = b"""
    <html><head>
      <base href="https://cdn.example.net/static/">
      <link rel="shortcut icon" href="data:image/png;base64,AAAA">
      <link rel="icon" href="fav.ico">
    </head></html>
    """
    assert extract_icon_urls(html, base_url="https://example.com/") == ["https://cdn.example.net/static/fav.ico"]


def test_extract_icons_none_declared():
    assert extract_icon_urls(b"<html><head><title>x</title></head></html>", base_url="https://example.com/") == []


def test_pick_largest_icon_from_besticon_and_manifest_shapes():
    besticon = {
        "icons": [
            {"url": "https://example.com/favicon.ico", "width": 16, "height": 16},
            {"url": "https://example.com/apple.png", "width": 180, "height": 180},
            {"url": "", "width": 512, "height": 512},
        ]
    }
    assert pick_largest_icon(besticon, base_url="https://example.com/") == "https://example.com/apple.png"

    manifest = {"icons": [{"src": "/i/192.png", "sizes": "192x192"}, {"src": "/i/512.png", "sizes": "48x48 512x512"}]}
    assert pick_largest_icon(manifest, base_url="https://example.com/app") == "https://example.com/i/512.png"

    assert pick_largest_icon({"icons": "nope"}, base_url="https://example.com/") is None
    assert pick_largest_icon({"icons": [{"url": "ftp://x/y.ico"}]}, base_url="https://example.com/") is None


def _run(coro):
    return asyncio.run(coro)


def test_json_wrapped_title_source():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["url"] == "https://example.com/page"
        return httpx.Response(200, json={"contents": "<title>Wrapped &amp; Decoded</title>", "status": {"http_code": 200}})

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            src = TitleSource("allorigins-get", "https://proxy.test/get?url={url}", decode="json")
            return await src.resolve(client, "https://example.com/page")

    assert _run(go()) == "Wrapped & Decoded"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="<title>Error page</title>"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"contents": None}),
    ],
)
def test_json_title_source_misses(response):
    async def go():
        transport = httpx.MockTransport(lambda request: response)
        async with httpx.AsyncClient(transport=transport) as client:
            src = TitleSource("allorigins-get", "https://proxy.test/get?url={url}", decode="json")
            await src.resolve(client, "https://example.com/")

    with pytest.raises(EnrichmentMiss):
        _run(go())


def test_page_icon_source_uses_final_url_after_redirect():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "example.com":
            return httpx.Response(301, headers={"Location": "https://www.example.com/home/"})
        return httpx.Response(200, html='<link rel="icon" href="img/icon.png">')

    async def go():
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport, follow_redirects=True) as client:
            return await PageIconSource("page").candidates(client, "https://example.com/")

    assert _run(go()) == ["https://www.example.com/home/img/icon.png"]


def test_icon_list_source_is_prevalidated():
    payload = {"icons": [{"url": "https://example.com/a.png", "width": 32, "height": 32}]}

    async def go():
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=json.dumps(payload).encode()))
        async with httpx.AsyncClient(transport=transport) as client:
            return await IconListSource("besticon", "https://icons.test/allicons.json?url={url}").candidates(
                client, "https://example.com/"
            )

    assert IconListSource.prevalidated is True
    assert _run(go()) == ["https://example.com/a.png"]


def test_build_favicon_sources_rejects_unknown_kind():
    with pytest.raises(ValueError):
        build_favicon_sources([{"name": "x", "kind": "telepathy", "endpoint": "{raw_url}"}])
    with pytest.raises(ValueError):
        TitleSource("x", "{raw_url}", decode="xml")

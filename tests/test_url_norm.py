import pytest

from linkstash.url_norm import expand_template, hostname_of, is_http_url, origin_of


@pytest.mark.parametrize(
    "url",
    ["https://example.com", "http://example.com/a?b=1", "  https://Example.COM/x  "],
)
def test_http_urls_accepted(url):
    assert is_http_url(url)


@pytest.mark.parametrize(
    "url",
    ["ftp://example.com/file", "example.com", "", "javascript:alert(1)", "https://", "http://[::1"],
)
def test_other_urls_rejected(url):
    assert not is_http_url(url)


def test_hostname_and_origin():
    assert hostname_of("https://Example.COM:8443/a") == "example.com"
    assert origin_of("https://example.com:8443/a/b?c") == "https://example.com:8443"
    assert hostname_of("not a url") == ""
    assert origin_of("not a url") is None


def test_expand_template_placeholders():
    url = "https://example.com/a b?x=1"
    assert expand_template("https://proxy/get?url={url}", url) == (
        "https://proxy/get?url=https%3A%2F%2Fexample.com%2Fa%20b%3Fx%3D1"
    )
    assert expand_template("{raw_url}", url) == url
    assert expand_template("https://icons/{domain}.ico", url) == "https://icons/example.com.ico"
    assert expand_template("{origin}/favicon.ico", url) == "https://example.com/favicon.ico"

import pytest
from src.sitecrawler.parse import (
    base_domain_of,
    ensure_scheme,
    is_internal_url,
    make_absolute_url,
    normalize_url,
)

class TestNormalizeUrl:
    def test_www_case_and_trailing_slash_collapse(self):
        assert normalize_url("http://WWW.Example.com/a/", "example.com") == normalize_url("http://example.com/a", "example.com")
        assert normalize_url("http://WWW.Example.com/a/", "example.com") == "http://example.com/a"

    def test_adds_www_when_base_has_it(self):
        assert normalize_url("https://example.com/x", "www.example.com") == "https://www.example.com/x"

    def test_fragment_removed_query_kept(self):
        assert normalize_url("https://example.com/p?b=2&a=1#top", "example.com") == "https://example.com/p?b=2&a=1"

    def test_root_path_kept(self):
        assert normalize_url("https://example.com/", "example.com") == "https://example.com/"
        assert normalize_url("https://example.com", "example.com") == "https://example.com/"

    def test_scheme_and_port_untouched(self):
        assert normalize_url("http://Example.com:8080/a/", "example.com") == "http://example.com:8080/a"

    def test_unparseable_returned_unchanged(self):
        bad = "http://[::1/broken"
        assert normalize_url(bad, "example.com") == bad

    @pytest.mark.parametrize("url", [
        "http://WWW.Example.com/a/",
        "https://example.com//double//",
        "https://www.example.com/?q=1#frag",
        "https://example.com:443/path/",
        "mailto:someone@example.com",
        "http://[::1]:8000/x/",
    ])
    @pytest.mark.parametrize("base", ["example.com", "www.example.com"])
    def test_idempotent(self, url, base):
        once = normalize_url(url, base)
        assert normalize_url(once, base) == once


class TestUrlHelpers:
    def test_ensure_scheme(self):
        assert ensure_scheme("example.com") == "https://example.com"
        assert ensure_scheme("http://example.com") == "http://example.com"
        assert ensure_scheme("  HTTPS://example.com ") == "HTTPS://example.com"

    def test_base_domain_of(self):
        assert base_domain_of("https://WWW.Example.com/path") == "www.example.com"
        assert base_domain_of("not a url") == ""

    def test_is_internal_exact_host(self):
        assert is_internal_url("https://example.com/a", "example.com")
        assert not is_internal_url("https://blog.example.com/a", "example.com")
        assert not is_internal_url("https://external.com/", "example.com")
        assert not is_internal_url("mailto:a@example.com", "example.com")

    def test_make_absolute_url(self):
        base = "https://example.com/dir/page.html"
        assert make_absolute_url("other.html", base) == "https://example.com/dir/other.html"
        assert make_absolute_url("/root", base) == "https://example.com/root"
        assert make_absolute_url("//cdn.example.net/x.js", base) == "https://cdn.example.net/x.js"
        assert make_absolute_url("http://external.com", base) == "http://external.com"
        assert make_absolute_url("mailto:a@b.c", base) == "mailto:a@b.c"

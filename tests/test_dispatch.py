"""Unit tests for request classification and cache keys."""

from __future__ import annotations

import pytest
from s3_imgproxy.dispatch import (
    GenericUrlOrigin,
    ImageContent,
    ObjectStorageOrigin,
    OpaqueContent,
    RequestDescriptor,
    build_cache_key,
    dispatch,
    parse_transform_params,
    select_origin,
)
from s3_imgproxy.mime import get_mime


def _request(url: str, method: str = "GET", headers=()) -> RequestDescriptor:
    return RequestDescriptor(method=method, url=url, headers=tuple(headers))


class TestRequestDescriptor:
    def test_from_scope_uses_raw_path(self):
        scope = {
            "type": "http",
            "method": "get",
            "scheme": "http",
            "path": "photo.jpg",
            "raw_path": b"/bucket/caf%C3%A9.jpg",
            "query_string": b"w=800&h=400",
            "headers": [(b"Host", b"img.example.com"), (b"Range", b"bytes=0-9")],
        }
        request = RequestDescriptor.from_scope(scope)
        assert request.method == "GET"
        assert request.url == "http://img.example.com/bucket/caf%C3%A9.jpg?w=800&h=400"
        assert request.header("range") == "bytes=0-9"
        assert request.header("Range") == "bytes=0-9"
        assert request.host == "img.example.com"

    def test_from_scope_ignores_query_in_raw_path(self):
        scope = {
            "method": "GET",
            "raw_path": b"/bucket/a.png?w=1",
            "query_string": b"w=1",
            "headers": [(b"host", b"img.example.com")],
        }
        request = RequestDescriptor.from_scope(scope)
        assert request.url == "http://img.example.com/bucket/a.png?w=1"

    def test_from_scope_without_raw_path(self):
        scope = {
            "method": "HEAD",
            "scheme": "https",
            "path": "bucket/my photo.png",
            "query_string": b"",
            "server": ("10.0.0.1", 8080),
            "headers": [],
        }
        request = RequestDescriptor.from_scope(scope)
        assert request.url == "https://10.0.0.1:8080/bucket/my%20photo.png"
        assert request.path == "/bucket/my%20photo.png"


class TestOriginSelection:
    def test_plain_path_is_object_storage(self):
        origin, path = select_origin("/bucket/photo.jpg")
        assert origin == ObjectStorageOrigin()
        assert path == "/bucket/photo.jpg"

    def test_absolute_url_is_generic_origin(self):
        origin, path = select_origin("/https://images.example.com/a/b.png")
        assert origin == GenericUrlOrigin("https://images.example.com/a/b.png")
        assert path == "/a/b.png"

    def test_non_http_scheme_is_object_storage(self):
        origin, _ = select_origin("/ftp://images.example.com/a.png")
        assert isinstance(origin, ObjectStorageOrigin)

    def test_generic_origin_classifies_parsed_path(self):
        """The embedded URL's path decides the content kind, not its host."""
        routed = dispatch(_request("https://edge.example.com/https://cdn.jpg/download"))
        assert isinstance(routed.origin, GenericUrlOrigin)
        assert isinstance(routed.content, OpaqueContent)

    def test_path_is_decoded_once(self):
        """%252E decodes to a literal %2E, never to a dot."""
        routed = dispatch(_request("https://edge.example.com/bucket/photo%252Ejpg?w=10"))
        assert isinstance(routed.content, OpaqueContent)

        routed = dispatch(_request("https://edge.example.com/bucket/photo%2Ejpg?w=10"))
        assert isinstance(routed.content, ImageContent)

    def test_encoded_generic_origin(self):
        routed = dispatch(
            _request("https://edge.example.com/https%3A%2F%2Fimages.example.com%2Fa.webp")
        )
        assert routed.origin == GenericUrlOrigin("https://images.example.com/a.webp")
        assert isinstance(routed.content, ImageContent)


class TestContentKind:
    @pytest.mark.parametrize(
        ("path", "mime"),
        [
            ("/bucket/photo.JPG", "image/jpeg"),
            ("/bucket/a.b/photo.webp", "image/webp"),
            ("/bucket/readme.txt", "text/plain"),
            ("/bucket/archive", None),
            ("/bucket/dir.d/file", None),
            ("/bucket/file.unknownext", None),
        ],
    )
    def test_get_mime(self, path, mime):
        assert get_mime(path) == mime

    def test_image_extension_selects_image(self):
        routed = dispatch(_request("https://edge.example.com/bucket/photo.png?w=20"))
        assert routed.content == ImageContent("image/png", {"w": 20})

    def test_other_extension_selects_opaque(self):
        routed = dispatch(_request("https://edge.example.com/bucket/notes.txt?w=20"))
        assert routed.content == OpaqueContent("text/plain")


class TestTransformParams:
    def test_recognized_params_only(self):
        assert parse_transform_params("w=800&h=400&x=ignored&q=90") == {"w": 800, "h": 400}

    def test_values_are_clamped(self):
        assert parse_transform_params("w=99999&h=1") == {"w": 6000, "h": 10}

    def test_last_duplicate_wins(self):
        assert parse_transform_params("w=100&w=200") == {"w": 200}

    def test_unparseable_value_is_dropped(self):
        assert parse_transform_params("w=abc&h=50") == {"h": 50}
        assert parse_transform_params("w=100&w=abc") == {"w": 100}

    def test_empty_query(self):
        assert parse_transform_params("") == {}


class TestCacheKey:
    def test_example_request(self):
        routed = dispatch(
            _request("https://img.example.com/bucket/photo.jpg?w=800&h=400&x=ignored")
        )
        assert routed.cache_key == "https://img.example.com/bucket/photo.jpg?h=400&w=800"

    def test_query_order_does_not_matter(self):
        keys = {
            dispatch(_request(f"https://img.example.com/b/photo.jpg?{query}")).cache_key
            for query in (
                "w=800&h=400",
                "h=400&w=800",
                "x=1&h=400&w=800",
                "h=400&x=2&w=800&y=3",
                "w=1&w=800&h=400",
            )
        }
        assert keys == {"https://img.example.com/b/photo.jpg?h=400&w=800"}

    def test_idempotent(self):
        request = _request("https://img.example.com/b/photo.jpg?w=800&h=400")
        assert dispatch(request).cache_key == dispatch(request).cache_key

    def test_clamped_values_share_a_key(self):
        first = dispatch(_request("https://img.example.com/b/photo.jpg?w=99999"))
        second = dispatch(_request("https://img.example.com/b/photo.jpg?w=6000"))
        assert first.cache_key == second.cache_key
        assert first.cache_key.endswith("?w=6000")

    def test_opaque_content_drops_query(self):
        routed = dispatch(_request("https://img.example.com/b/file.pdf?w=800&v=2"))
        assert routed.cache_key == "https://img.example.com/b/file.pdf"

    def test_headers_and_method_do_not_participate(self):
        url = "https://img.example.com/b/photo.jpg?w=80"
        get = dispatch(_request(url))
        head = dispatch(_request(url, method="HEAD", headers=[("accept", "image/webp")]))
        assert get.cache_key == head.cache_key

    def test_host_case_and_fragment_are_normalized(self):
        routed = dispatch(_request("https://IMG.Example.com/b/photo.jpg?w=80#top"))
        assert routed.cache_key == "https://img.example.com/b/photo.jpg?w=80"

    def test_content_params_win_on_collision(self):
        class _Origin:
            def cache_params(self):
                return {"w": "origin", "v": "a b"}

        key = build_cache_key(
            "https://img.example.com/b/photo.jpg",
            _Origin(),  # type: ignore[arg-type]
            ImageContent("image/jpeg", {"w": 50}),
        )
        assert key == "https://img.example.com/b/photo.jpg?v=a%20b&w=50"

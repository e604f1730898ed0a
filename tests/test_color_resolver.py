"""Tests for bird search and color lookup."""

from __future__ import annotations

import http.client
import json
import socketserver
import threading
from typing import Iterator
from urllib.parse import parse_qs, urlparse

import pytest

from domain.feather_type import BirdRecord, FeatherValidationError
from service.color_resolver import (
    ColorFetchError,
    ColorResolver,
    build_color_url,
    build_search_url,
    fetch_json,
    parse_search_results,
)

from feather_fixtures import OWL_COLORS, FakeColorService

SERVER = "https://colors.example.test/"


def test_search_url_lists_unique_letters() -> None:
    """The search asks for a few birds per unique letter."""
    url = build_search_url(SERVER, ("A", "B"))
    parsed = urlparse(url)
    assert parsed.path == "/search"
    query = parse_qs(parsed.query)
    assert query["query"] == ["startsWith:A,B"]
    assert query["perToken"] == ["3"]
    assert query["limit"] == ["100"]


def test_color_url_prefers_name_then_code() -> None:
    """Named records look up by name; code-only records by species code."""
    named = parse_qs(urlparse(build_color_url(SERVER, BirdRecord("Blue Jay"))).query)
    assert named == {"species": ["Blue Jay"], "isCode": ["false"]}
    coded = parse_qs(
        urlparse(build_color_url(SERVER, BirdRecord(None, "barowl"))).query
    )
    assert coded == {"species": ["barowl"], "isCode": ["true"]}
    assert build_color_url(SERVER, BirdRecord(None)) is None


def test_resolves_every_bird(color_service: FakeColorService) -> None:
    """Each search result settles and colors are keyed by uppercased name."""
    resolver = ColorResolver(SERVER, fetch=color_service)
    resolution = resolver.resolve("A-B")
    assert resolution.bird_names == ("American Robin", "Blue Jay", "Barn Owl")
    assert resolution.issued == resolution.settled == 3
    assert set(resolution.color_map) == {"AMERICAN ROBIN", "BLUE JAY", "BARN OWL"}
    assert resolution.color_map["BLUE JAY"].wing_length == 140.0


def test_one_failed_lookup_does_not_fail_the_rest(color_service: FakeColorService) -> None:
    """A failed lookup settles empty."""
    color_service.failing.add("Blue Jay")
    resolution = ColorResolver(SERVER, fetch=color_service).resolve("AB")
    assert resolution.settled == resolution.issued == 3
    assert "BLUE JAY" not in resolution.color_map
    assert "BARN OWL" in resolution.color_map


def test_malformed_color_payload_settles_empty(color_service: FakeColorService) -> None:
    """A payload without a colors list counts as an empty result."""
    color_service.colors["Barn Owl"] = {"name": "Barn Owl"}
    resolution = ColorResolver(SERVER, fetch=color_service).resolve("B")
    assert set(resolution.color_map) == {"BLUE JAY"}


def test_results_without_identity_settle_without_fetching(
    color_service: FakeColorService,
) -> None:
    """A result with neither name nor code settles immediately."""
    color_service.birds_by_letter["C"] = [{}]
    resolution = ColorResolver(SERVER, fetch=color_service).resolve("C")
    assert resolution.issued == resolution.settled == 1
    assert resolution.color_map == {}
    assert resolution.empty
    assert len(color_service.calls) == 1


def test_search_failure_yields_empty_resolution() -> None:
    """A failed search is an empty outcome, not an exception."""

    def failing_fetch(url: str, timeout_seconds: float) -> object:
        raise ColorFetchError("feather_type.color.unreachable", "down")

    resolution = ColorResolver(SERVER, fetch=failing_fetch).resolve("ABC")
    assert resolution.empty
    assert resolution.issued == 0


def test_hung_lookup_times_out_as_empty(color_service: FakeColorService) -> None:
    """A lookup that outlives the timeout settles empty."""
    gate = threading.Event()
    color_service.blocked["Barn Owl"] = gate
    try:
        resolver = ColorResolver(SERVER, fetch=color_service, timeout_seconds=0.2)
        resolution = resolver.resolve("B")
    finally:
        gate.set()
    assert resolution.settled == resolution.issued == 2
    assert set(resolution.color_map) == {"BLUE JAY"}


def test_progress_reports_settled_counts(color_service: FakeColorService) -> None:
    """Progress starts at zero and ends with everything settled."""
    reports: list[tuple[int, int]] = []
    ColorResolver(SERVER, fetch=color_service).resolve(
        "AB", on_progress=lambda settled, issued: reports.append((settled, issued))
    )
    assert reports[0] == (0, 3)
    assert reports[-1] == (3, 3)
    assert [settled for settled, _ in reports] == sorted(settled for settled, _ in reports)


def test_parse_search_results_requires_results_list() -> None:
    with pytest.raises(ColorFetchError):
        parse_search_results({"items": []})
    records = parse_search_results({"results": [{"name": " "}, {"speciesCode": "amerob"}]})
    assert records == (BirdRecord(None, None), BirdRecord(None, "amerob"))


def test_resolver_rejects_invalid_limits() -> None:
    with pytest.raises(FeatherValidationError):
        ColorResolver(SERVER, timeout_seconds=0)
    with pytest.raises(FeatherValidationError):
        ColorResolver(SERVER, max_workers=0)


class RawColorHandler(socketserver.StreamRequestHandler):
    """Serves the search and Barn Owl colors; answers Blue Jay with a broken status line."""

    def handle(self) -> None:
        request_line = self.rfile.readline().decode("latin-1")
        while self.rfile.readline() not in (b"\r\n", b"\n", b""):
            pass
        path = request_line.split(" ")[1]
        if path.startswith("/search"):
            body = {"results": [{"name": "Blue Jay"}, {"name": "Barn Owl"}]}
        elif "Blue+Jay" in path:
            self.wfile.write(b"garbage line\r\n\r\n")
            return
        else:
            body = {"name": "Barn Owl", "colors": OWL_COLORS}
        payload = json.dumps(body).encode("utf-8")
        self.wfile.write(
            b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
            + f"Content-Length: {len(payload)}\r\nConnection: close\r\n\r\n".encode("ascii")
            + payload
        )


@pytest.fixture
def raw_color_server() -> Iterator[str]:
    server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), RawColorHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}/"
    finally:
        server.shutdown()
        server.server_close()


def test_fetch_json_maps_bad_status_line(raw_color_server: str) -> None:
    """A response that is not HTTP raises a coded fetch error."""
    with pytest.raises(ColorFetchError) as excinfo:
        fetch_json(f"{raw_color_server}birdcolor?species=Blue+Jay&isCode=false", 5.0)
    assert excinfo.value.code == "feather_type.color.bad_response"


def test_fetch_json_maps_malformed_url() -> None:
    with pytest.raises(ColorFetchError):
        fetch_json("not a url", 1.0)


def test_broken_response_settles_only_that_bird(raw_color_server: str) -> None:
    """A broken HTTP response for one bird leaves the others resolved."""
    resolution = ColorResolver(raw_color_server, timeout_seconds=5.0).resolve("B")
    assert resolution.settled == resolution.issued == 2
    assert set(resolution.color_map) == {"BARN OWL"}


def test_unexpected_fetch_exception_settles_empty(color_service: FakeColorService) -> None:
    """Any exception from a lookup counts as settled without colors."""

    def flaky_fetch(url: str, timeout_seconds: float) -> object:
        if "Barn+Owl" in url:
            raise http.client.IncompleteRead(b"")
        return color_service(url, timeout_seconds)

    resolution = ColorResolver(SERVER, fetch=flaky_fetch).resolve("B")
    assert resolution.settled == resolution.issued == 2
    assert set(resolution.color_map) == {"BLUE JAY"}

"""Bird search and plumage color lookup for feather_type.

The color service exposes two endpoints: a prefix search returning bird
records for a set of letters, and a per-species color lookup. Every lookup
settles, successfully or not; a failed or timed-out lookup settles empty and
the letter that would have used it renders without a feather.
"""

from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
import http.client
import json
import logging
import math
import time
from typing import Callable, Mapping, Sequence, Tuple
import urllib.error
import urllib.parse
import urllib.request

from domain.feather_type import (
    INVALID_CONFIG_CODE,
    BirdRecord,
    ColorEntry,
    FeatherValidationError,
    parse_color_entry,
    phrase_letters,
)

LOGGER = logging.getLogger("feather_type.color_resolver")

DEFAULT_COLOR_SERVER = "https://birdstocolors.binstobins.online/"
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_WORKERS = 8
SEARCH_PER_TOKEN = 3
SEARCH_LIMIT = 100

COLOR_PAYLOAD_CODE = "feather_type.color.invalid_payload"

FetchJson = Callable[[str, float], object]
ProgressCallback = Callable[[int, int], None]


class ColorFetchError(RuntimeError):
    """Color service failure with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ColorResolution:
    """Settled outcome of one search plus its color lookups."""

    bird_names: Tuple[str, ...]
    color_map: Mapping[str, ColorEntry]
    issued: int
    settled: int

    @property
    def empty(self) -> bool:
        return not any(name.strip() for name in self.bird_names)


EMPTY_RESOLUTION = ColorResolution(bird_names=(), color_map={}, issued=0, settled=0)


def fetch_json(url: str, timeout_seconds: float) -> object:
    """GET a URL and decode its JSON body."""
    try:
        request = urllib.request.Request(url, headers={"Accept": "application/json"})
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            body = response.read()
    except urllib.error.HTTPError as exc:
        raise ColorFetchError(
            "feather_type.color.http_error", f"{url} returned HTTP {exc.code}"
        ) from exc
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        raise ColorFetchError(
            "feather_type.color.unreachable", f"{url} could not be fetched: {exc}"
        ) from exc
    except (http.client.HTTPException, ValueError) as exc:
        raise ColorFetchError(
            "feather_type.color.bad_response", f"{url} returned a bad response: {exc!r}"
        ) from exc
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ColorFetchError(COLOR_PAYLOAD_CODE, f"{url} did not return JSON") from exc


def build_search_url(server_url: str, letters: Sequence[str]) -> str:
    query = urllib.parse.urlencode(
        {
            "query": f"startsWith:{','.join(letters)}",
            "perToken": SEARCH_PER_TOKEN,
            "limit": SEARCH_LIMIT,
        },
        safe=":,",
    )
    return urllib.parse.urljoin(server_url, f"search?{query}")


def build_color_url(server_url: str, record: BirdRecord) -> str | None:
    """Return the color lookup URL for a record, or None when it has no id."""
    if record.name:
        species, is_code = record.name, "false"
    elif record.species_code:
        species, is_code = record.species_code, "true"
    else:
        return None
    query = urllib.parse.urlencode({"species": species, "isCode": is_code})
    return urllib.parse.urljoin(server_url, f"birdcolor?{query}")


def parse_search_results(payload: object) -> Tuple[BirdRecord, ...]:
    """Extract bird records from a search payload."""
    if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
        raise ColorFetchError(COLOR_PAYLOAD_CODE, "search payload has no results list")
    records: list[BirdRecord] = []
    for raw_result in payload["results"]:
        if not isinstance(raw_result, dict):
            continue
        name = raw_result.get("name")
        code = raw_result.get("speciesCode") or raw_result.get("code")
        records.append(
            BirdRecord(
                name=name if isinstance(name, str) and name.strip() else None,
                species_code=code if isinstance(code, str) and code.strip() else None,
            )
        )
    return tuple(records)


class ColorResolver:
    """Search birds for a phrase and resolve their plumage colors."""

    def __init__(
        self,
        server_url: str = DEFAULT_COLOR_SERVER,
        fetch: FetchJson = fetch_json,
        timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        if timeout_seconds <= 0:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "fetch timeout must be positive"
            )
        if max_workers <= 0:
            raise FeatherValidationError(
                INVALID_CONFIG_CODE, "max workers must be positive"
            )
        self.server_url = server_url if server_url.endswith("/") else f"{server_url}/"
        self.fetch = fetch
        self.timeout_seconds = timeout_seconds
        self.max_workers = max_workers

    def search_birds(self, phrase: str) -> Tuple[BirdRecord, ...]:
        """Search birds whose names start with any letter of the phrase."""
        letters = phrase_letters(phrase)
        if not letters:
            return ()
        url = build_search_url(self.server_url, letters)
        try:
            records = parse_search_results(self.fetch(url, self.timeout_seconds))
        except ColorFetchError as exc:
            LOGGER.warning("%s: search failed for %s: %s", exc.code, letters, exc)
            return ()
        LOGGER.info(
            "feather_type.color.search: %d birds for %s", len(records), ",".join(letters)
        )
        return records

    def fetch_colors(self, record: BirdRecord) -> ColorEntry | None:
        """Fetch one bird's colors, returning None on any failure."""
        url = build_color_url(self.server_url, record)
        if url is None:
            return None
        try:
            return parse_color_entry(self.fetch(url, self.timeout_seconds), COLOR_PAYLOAD_CODE)
        except (ColorFetchError, FeatherValidationError) as exc:
            LOGGER.warning(
                "%s: colors for %s: %s",
                exc.code,
                record.name or record.species_code,
                exc,
            )
            return None

    def resolve(
        self, phrase: str, on_progress: ProgressCallback | None = None
    ) -> ColorResolution:
        """Search and fetch colors for every result, settling all lookups.

        ``on_progress(settled, issued)`` is called once before any lookup
        settles and again after each one.
        """
        records = self.search_birds(phrase)
        if not records:
            return EMPTY_RESOLUTION

        bird_names = tuple(record.name or "" for record in records)
        issued = len(records)
        settled = 0
        color_map: dict[str, ColorEntry] = {}
        if on_progress is not None:
            on_progress(settled, issued)

        # Each wave of workers gets one timeout window.
        waves = math.ceil(issued / float(self.max_workers))
        deadline = time.monotonic() + self.timeout_seconds * max(1, waves)
        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            pending: set[Future[ColorEntry | None]] = {
                executor.submit(self.fetch_colors, record) for record in records
            }
            while pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        entry = future.result()
                    except Exception as exc:
                        LOGGER.warning(
                            "feather_type.color.fetch_failed: lookup raised %r", exc
                        )
                        entry = None
                    settled += 1
                    # Write-once per name within a resolution.
                    if entry is not None and entry.key not in color_map:
                        color_map[entry.key] = entry
                    if on_progress is not None:
                        on_progress(settled, issued)
            if pending:
                LOGGER.warning(
                    "feather_type.color.fetch_timeout: %d of %d lookups timed out",
                    len(pending),
                    issued,
                )
                for future in pending:
                    future.cancel()
                settled += len(pending)
                if on_progress is not None:
                    on_progress(settled, issued)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        LOGGER.info(
            "feather_type.color.settled: %d of %d birds have colors",
            len(color_map),
            issued,
        )
        return ColorResolution(
            bird_names=bird_names,
            color_map=color_map,
            issued=issued,
            settled=settled,
        )

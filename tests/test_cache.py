import concurrent.futures
import threading
import time
from unittest.mock import MagicMock

import pytest
import requests

from player.cache import AudioCacheManager
from shared.errors import DownloadFailed, NetworkUnavailable

from conftest import FakeConnectivity, InlineExecutor, make_tracks, stream_url


class FakeResponse:
    def __init__(self, body=b"audio-bytes", status=200, content_type="audio/mpeg", gate=None):
        self.body = body
        self.status_code = status
        self.headers = {"Content-Type": content_type}
        self.gate = gate
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def iter_content(self, chunk_size=1):
        if self.gate is not None:
            self.gate.wait(5)
        yield self.body

    def close(self):
        self.closed = True


@pytest.fixture
def session():
    session = MagicMock()
    session.get.side_effect = lambda url, **kwargs: FakeResponse()
    return session


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_cache(tmp_path, session, sleeps):
    caches = []

    def build(connectivity=None, executor=None, **kwargs):
        cache = AudioCacheManager(
            str(tmp_path / "cache"),
            stream_url=stream_url,
            session=session,
            connectivity=connectivity or FakeConnectivity(),
            executor=executor or InlineExecutor(),
            sleep=sleeps.append,
            **kwargs
        )
        caches.append(cache)
        return cache

    yield build
    for cache in caches:
        cache.close()


def test_download_then_cached(make_cache, session):
    cache = make_cache()
    track = make_tracks("A")[0]

    path = cache.download_and_cache(track).result()

    assert path.read_bytes() == b"audio-bytes"
    assert path.suffix == ".mp3"
    assert cache.is_cached("A")
    assert cache.cache_file("A") == path
    session.get.assert_called_once()
    assert session.get.call_args[0][0] == "https://api.test/stream/A"
    assert not list(cache.media_dir.glob("*.part"))


def test_already_cached_returns_completed_future(make_cache, session):
    cache = make_cache()
    track = make_tracks("A")[0]
    first = cache.download_and_cache(track).result()

    again = cache.download_and_cache(track)
    assert again.done()
    assert again.result() == first
    assert session.get.call_count == 1


def test_deleted_file_is_not_cached(make_cache):
    cache = make_cache()
    path = cache.download_and_cache(make_tracks("A")[0]).result()

    path.unlink()

    assert not cache.is_cached("A")
    assert "A" not in cache.cached_ids()
    assert cache.cache_file("A") is None


def test_empty_file_is_not_cached(make_cache):
    cache = make_cache()
    path = cache.download_and_cache(make_tracks("A")[0]).result()

    path.write_bytes(b"")

    assert not cache.is_cached("A")


def test_unknown_track_is_not_cached(make_cache):
    assert not make_cache().is_cached("nope")


def test_concurrent_requests_share_one_transfer(make_cache, session):
    gate = threading.Event()
    session.get.side_effect = lambda url, **kwargs: FakeResponse(gate=gate)
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=4)
    cache = make_cache(executor=executor)
    track = make_tracks("A")[0]

    try:
        futures = [cache.download_and_cache(track) for _ in range(5)]
        assert all(f is futures[0] for f in futures)
        gate.set()
        assert futures[0].result(timeout=5).exists()
    finally:
        gate.set()
        executor.shutdown(wait=True)

    assert session.get.call_count == 1


def test_offline_download_fails_fast(make_cache, session):
    cache = make_cache(connectivity=FakeConnectivity(online=False))

    future = cache.download_and_cache(make_tracks("X")[0])

    assert isinstance(future.exception(), NetworkUnavailable)
    session.get.assert_not_called()
    assert not cache.is_cached("X")


def test_retries_with_backoff(make_cache, session, sleeps):
    responses = [requests.ConnectionError("reset"), FakeResponse(status=500), FakeResponse()]

    def get(url, **kwargs):
        result = responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    session.get.side_effect = get
    cache = make_cache()

    path = cache.download_and_cache(make_tracks("A")[0]).result()

    assert path.exists()
    assert sleeps == [1, 2]
    assert session.get.call_count == 3


def test_exhausted_attempts_raise_download_failed(make_cache, session, sleeps):
    session.get.side_effect = lambda url, **kwargs: FakeResponse(status=503)
    cache = make_cache()

    error = cache.download_and_cache(make_tracks("A")[0]).exception()

    assert isinstance(error, DownloadFailed)
    assert error.attempts == 3
    assert sleeps == [1, 2]
    assert not cache.is_cached("A")
    assert not list(cache.media_dir.iterdir())


def test_failed_download_can_be_retried(make_cache, session):
    session.get.side_effect = lambda url, **kwargs: FakeResponse(status=404)
    cache = make_cache()
    track = make_tracks("A")[0]
    assert cache.download_and_cache(track).exception() is not None

    session.get.side_effect = lambda url, **kwargs: FakeResponse()
    assert cache.download_and_cache(track).result().exists()


def test_preload_respects_limit_and_skips_cached(make_cache, session):
    cache = make_cache()
    tracks = make_tracks("A", "B", "C", "D")
    cache.download_and_cache(tracks[0]).result()

    count = cache.preload_batch(tracks, limit=2)

    assert count == 2
    assert cache.cached_ids() == {"A", "B", "C"}


def test_preload_aborts_when_connectivity_lost(make_cache, session):
    connectivity = FakeConnectivity()
    cache = make_cache(connectivity=connectivity)
    fetched = []

    def get(url, **kwargs):
        fetched.append(url)
        connectivity.online = False
        return FakeResponse()

    session.get.side_effect = get

    count = cache.preload_batch(make_tracks("A", "B", "C"), limit=5)

    assert count == 1
    assert len(fetched) == 1


def test_preload_skips_failed_tracks(make_cache, session):
    def get(url, **kwargs):
        if url.endswith("/B"):
            return FakeResponse(status=500)
        return FakeResponse()

    session.get.side_effect = get
    cache = make_cache()

    assert cache.preload_batch(make_tracks("A", "B", "C"), limit=5) == 2
    assert cache.cached_ids() == {"A", "C"}


def test_evict_all_clears_everything(make_cache):
    cache = make_cache()
    cache.preload_batch(make_tracks("A", "B"), limit=5)

    cache.evict_all()

    assert cache.cached_ids() == set()
    assert not cache.is_cached("A")
    assert cache.total_size() == 0
    assert cache.media_dir.is_dir()


def test_total_size_sums_files(make_cache, session):
    session.get.side_effect = lambda url, **kwargs: FakeResponse(body=b"x" * 100)
    cache = make_cache()
    cache.preload_batch(make_tracks("A", "B", "C"), limit=5)

    assert cache.total_size() == 300


def test_total_size_leaves_out_index(make_cache, session):
    session.get.side_effect = lambda url, **kwargs: FakeResponse(body=b"x" * 100)
    cache = make_cache()
    cache.preload_batch(make_tracks("A"), limit=5)

    assert cache.db_path.exists()
    assert cache.total_size() == 100


def test_lru_eviction_keeps_size_under_cap(make_cache, session):
    session.get.side_effect = lambda url, **kwargs: FakeResponse(body=b"x" * 100)
    cache = make_cache(max_size_bytes=250)
    a, b, c = make_tracks("A", "B", "C")

    cache.download_and_cache(a).result()
    time.sleep(0.01)
    cache.download_and_cache(b).result()
    time.sleep(0.01)
    cache.cache_file("A")
    time.sleep(0.01)
    cache.download_and_cache(c).result()

    assert cache.cached_ids() == {"A", "C"}
    assert cache.total_size() <= 250


def test_remove_deletes_entry(make_cache):
    cache = make_cache()
    path = cache.download_and_cache(make_tracks("A")[0]).result()

    cache.remove("A")

    assert not path.exists()
    assert not cache.is_cached("A")


def test_index_survives_restart(make_cache, tmp_path):
    cache = make_cache()
    paths = [cache.download_and_cache(t).result() for t in make_tracks("A", "B")]
    cache.close()
    paths[1].unlink()

    reopened = make_cache()

    assert reopened.cached_ids() == {"A"}
    assert reopened.is_cached("A")
    assert not reopened.is_cached("B")

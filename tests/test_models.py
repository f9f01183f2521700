import pytest

from shared.models import PlaybackMode, Playlist, SyncJob, Track


def test_mode_cycle():
    assert PlaybackMode.LINEAR.next() == PlaybackMode.SHUFFLE
    assert PlaybackMode.SHUFFLE.next() == PlaybackMode.LOOP
    assert PlaybackMode.LOOP.next() == PlaybackMode.LINEAR


def test_track_from_api_record():
    track = Track.from_dict({
        "id": 42,
        "name": "Song",
        "artists": [{"name": "First"}, "Second", {"name": ""}],
        "image": "https://img.test/1.jpg",
        "extra": "ignored",
    })

    assert track.id == "42"
    assert track.title == "Song"
    assert track.artist == "First, Second"
    assert track.image_url == "https://img.test/1.jpg"
    assert not track.has_error


def test_track_status_changes_produce_new_values():
    track = Track(id="a", title="A", artist="X")

    failed = track.with_error("gone")
    assert failed.has_error and failed.error_message == "gone"
    assert not track.has_error

    assert failed.without_error() == track
    assert track.with_ignored(True).is_ignored


def test_track_storage_record_round_trip():
    track = Track(id="a", title="A", artist="X", is_ignored=True).with_error("bad")
    assert Track.from_dict(track.to_dict()) == track


def test_track_requires_id():
    with pytest.raises(KeyError):
        Track.from_dict({"name": "nameless"})


def test_playlist_from_dict_filters_unknown_keys():
    playlist = Playlist.from_dict({"id": "p", "name": "P", "source_url": "u", "owner": "me"})
    assert playlist.track_ids == []
    assert playlist.to_dict()["name"] == "P"


@pytest.mark.parametrize("raw, expected", [(0.5, 0.5), ("0.25", 0.25), (None, 0.0), (7, 1.0), (-1, 0.0)])
def test_sync_job_progress_is_normalised(raw, expected):
    job = SyncJob.from_dict({"jobId": "j", "status": "processing", "progress": raw})
    assert job.progress == expected


def test_sync_job_defaults_and_flags():
    job = SyncJob.from_dict({"jobId": 9})

    assert job.id == "9"
    assert job.playlist_name == "Unknown Playlist"
    assert job.status == "unknown"
    assert job.start_time
    assert not job.is_finished

    done = SyncJob.from_dict({"jobId": "j", "status": "completed"})
    assert done.is_complete and done.is_finished
    assert SyncJob.from_dict(done.to_dict()).status == "completed"

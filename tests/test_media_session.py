import pytest

from player.media_session import NO_TRACK_ID, MediaSessionBridge
from shared.models import PlaybackMode


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


@pytest.fixture
def session(orchestrator, bus):
    bridge = MediaSessionBridge(orchestrator, bus)
    yield bridge
    bridge.close()


def test_no_track(session):
    assert session.get_current_track_info() == {"mpris:trackid": NO_TRACK_ID}
    assert session.get_playback_status() == "Stopped"
    assert not session.can_go_next()
    assert not session.can_play()


def test_metadata_follows_track_events(session, orchestrator, tracks):
    orchestrator.start_playlist(tracks)

    info = session.get_current_track_info()
    assert info["mpris:trackid"].endswith("/A")
    assert info["xesam:title"] == "Song A"
    assert info["xesam:artist"] == ["Artist A"]
    assert session.get_playback_status() == "Playing"


def test_play_pause_commands(session, orchestrator, engine, tracks):
    orchestrator.start_playlist(tracks)

    session.pause()
    assert not engine.playing
    assert session.get_playback_status() == "Paused"
    session.pause()
    assert not engine.playing

    session.play()
    assert engine.playing
    session.playpause()
    assert not engine.playing


def test_play_starts_queue_cursor(session, orchestrator, engine, tracks):
    orchestrator.start_playlist(tracks, start_track_id="B", autoplay=False)
    assert session.can_play()

    session.play()

    assert engine.current_id == "B"


def test_next_previous_and_stop(session, orchestrator, engine, tracks):
    orchestrator.start_playlist(tracks)

    session.next()
    assert engine.current_id == "B"
    session.stop()
    assert not engine.playing


def test_seek_is_relative_microseconds(session, orchestrator, engine, tracks):
    orchestrator.start_playlist(tracks)
    engine.tick(10.0)

    session.seek(5_000_000)

    assert engine.seeks == [15.0]


def test_set_position_ignores_other_tracks(session, orchestrator, engine, tracks):
    orchestrator.start_playlist(tracks)
    track_id = session.get_current_track_info()["mpris:trackid"]

    session.set_position("/org/mpris/MediaPlayer2/TrackList/zzz", 1_000_000)
    session.set_position(track_id, 30_000_000)

    assert engine.seeks == [30.0]


def test_mode_status(session, orchestrator, tracks):
    orchestrator.start_playlist(tracks)
    changes = []
    session.add_change_callback(lambda: changes.append(1))

    orchestrator.toggle_mode()
    assert session.get_shuffle()
    orchestrator.toggle_mode()
    assert session.get_loop_status() == "Track"
    assert orchestrator.mode == PlaybackMode.LOOP
    assert len(changes) == 2


def test_close_unsubscribes(session, orchestrator, tracks):
    session.close()
    orchestrator.start_playlist(tracks)
    assert session.get_current_track_info() == {"mpris:trackid": NO_TRACK_ID}

import random
from collections import Counter

import pytest

from player.queue_manager import PlaybackQueue, fisher_yates
from shared.models import Direction, PlaybackMode

from conftest import make_tracks


def _queue(seed=7):
    return PlaybackQueue(rng=random.Random(seed))


def test_linear_wraps_through_playlist():
    queue = _queue()
    queue.set_source(make_tracks("A", "B", "C"))
    assert queue.current_track.id == "A"

    assert queue.advance(Direction.NEXT).id == "B"
    assert queue.advance(Direction.NEXT).id == "C"
    assert queue.advance(Direction.NEXT).id == "A"


def test_previous_wraps_backwards():
    queue = _queue()
    queue.set_source(make_tracks("A", "B", "C"))
    assert queue.advance(Direction.PREVIOUS).id == "C"
    assert queue.index == 2


@pytest.mark.parametrize("mode", [PlaybackMode.LINEAR, PlaybackMode.SHUFFLE])
@pytest.mark.parametrize("size", [1, 2, 5, 13])
def test_full_cycle_returns_to_start(mode, size):
    queue = _queue(seed=size)
    queue.set_mode(mode)
    queue.set_source(make_tracks(*[f"t{i}" for i in range(size)]), start_track_id=f"t{size // 2}")
    start = queue.current_track

    for _ in range(size):
        queue.advance(Direction.NEXT)
    assert queue.current_track == start


def test_shuffle_is_a_permutation():
    tracks = make_tracks(*[f"t{i}" for i in range(20)])
    for seed in range(10):
        queue = _queue(seed)
        queue.set_source(tracks)
        assert Counter(t.id for t in queue.shuffled_ordering) == Counter(t.id for t in tracks)


def test_fisher_yates_leaves_input_untouched():
    tracks = make_tracks("A", "B", "C", "D")
    shuffled = fisher_yates(tracks, random.Random(1))
    assert [t.id for t in tracks] == ["A", "B", "C", "D"]
    assert sorted(t.id for t in shuffled) == ["A", "B", "C", "D"]


def test_shuffle_rebuilt_on_every_set_source():
    queue = _queue()
    tracks = make_tracks(*[f"t{i}" for i in range(12)])
    queue.set_source(tracks)
    first = [t.id for t in queue.shuffled_ordering]
    orders = {tuple(first)}
    for _ in range(5):
        queue.set_source(tracks)
        orders.add(tuple(t.id for t in queue.shuffled_ordering))
    assert len(orders) > 1


def test_start_track_sets_index():
    queue = _queue()
    queue.set_source(make_tracks("A", "B", "C"), start_track_id="C")
    assert queue.current_track.id == "C"
    assert queue.index == 2


def test_unknown_start_track_falls_back_to_first():
    queue = _queue()
    queue.set_source(make_tracks("A", "B"), start_track_id="zzz")
    assert queue.index == 0


def test_ignored_tracks_are_not_playable():
    tracks = make_tracks("A", "B", "C")
    tracks[1] = tracks[1].with_ignored(True)
    queue = _queue()
    queue.set_source(tracks, start_track_id="B")

    assert [t.id for t in queue.linear_ordering] == ["A", "C"]
    assert len(queue.display_tracks) == 3
    assert queue.current_track.id == "A"
    assert queue.advance(Direction.NEXT).id == "C"


def test_all_ignored_keeps_display_list_only():
    tracks = [t.with_ignored(True) for t in make_tracks("A", "B")]
    queue = _queue()
    queue.set_source(tracks)

    assert queue.is_empty()
    assert queue.index == -1
    assert queue.current_track is None
    assert queue.advance(Direction.NEXT) is None
    assert len(queue.display_tracks) == 2


def test_empty_source():
    queue = _queue()
    queue.set_source([])
    assert queue.index == -1
    assert queue.advance(Direction.PREVIOUS) is None
    assert queue.upcoming(3) == []


def test_toggle_mode_keeps_current_track():
    queue = _queue(seed=3)
    queue.set_source(make_tracks(*[f"t{i}" for i in range(8)]), start_track_id="t5")
    current = queue.current_track

    for expected in (PlaybackMode.SHUFFLE, PlaybackMode.LOOP, PlaybackMode.LINEAR):
        assert queue.toggle_mode() == expected
        assert queue.current_track == current


def test_loop_mode_uses_shuffled_ordering():
    queue = _queue(seed=3)
    queue.set_source(make_tracks(*[f"t{i}" for i in range(6)]))
    queue.set_mode(PlaybackMode.SHUFFLE)
    queue.set_mode(PlaybackMode.LOOP)
    assert queue.active_ordering == queue.shuffled_ordering


def test_locate_moves_cursor():
    queue = _queue()
    queue.set_source(make_tracks("A", "B", "C"))
    assert queue.locate("C")
    assert queue.current_track.id == "C"
    assert not queue.locate("missing")
    assert queue.current_track.id == "C"


def test_upcoming_wraps_without_repeats():
    queue = _queue()
    queue.set_source(make_tracks("A", "B", "C"), start_track_id="B")
    assert [t.id for t in queue.upcoming(2)] == ["C", "A"]
    assert [t.id for t in queue.upcoming(10)] == ["C", "A"]


def test_change_callbacks():
    queue = _queue()
    calls = []
    queue.add_change_callback(lambda: calls.append(1))
    queue.set_source(make_tracks("A", "B"))
    queue.advance(Direction.NEXT)
    assert len(calls) == 2


def test_failing_change_callback_does_not_break_queue():
    queue = _queue()

    def broken():
        raise RuntimeError("boom")

    queue.add_change_callback(broken)
    queue.set_source(make_tracks("A", "B"))
    assert queue.advance(Direction.NEXT).id == "B"


def test_no_upcoming_in_loop_mode():
    queue = _queue(seed=3)
    queue.set_source(make_tracks("A", "B", "C", "D"))
    queue.set_mode(PlaybackMode.LOOP)
    assert queue.upcoming(2) == []

    queue.set_mode(PlaybackMode.LINEAR)
    assert len(queue.upcoming(2)) == 2

from neutronium import levels


def test_guest_is_capped_at_level_one():
    assert levels.max_unlocked_level(True, []) == 1
    assert levels.max_unlocked_level(True, [1, 2, 3, 4]) == 1


def test_registered_unlocks_one_past_highest_completed():
    assert levels.max_unlocked_level(False, []) == 1
    assert levels.max_unlocked_level(False, [1]) == 2
    # gaps don't matter, only the highest level
    assert levels.max_unlocked_level(False, [1, 6]) == 7
    assert levels.max_unlocked_level(False, range(1, 14)) == 13


def test_session_level_is_minimum_of_member_limits():
    assert levels.session_level([5, 1, 7]) == 1
    assert levels.session_level([7]) == 7
    assert levels.session_level(iter([3, 4])) == 3
    assert levels.session_level([]) is None


def test_next_level_stops_after_thirteen():
    assert levels.next_level(1) == 2
    assert levels.next_level(12) == 13
    assert levels.next_level(13) is None


def test_level_validation():
    assert levels.is_valid_level(1)
    assert levels.is_valid_level(13)
    assert not levels.is_valid_level(0)
    assert not levels.is_valid_level(14)
    assert not levels.is_valid_level("3")
    assert not levels.is_valid_level(True)


def test_color_and_box_id_validation():
    for c in levels.COLORS:
        assert levels.is_valid_color(c)
    assert levels.is_valid_color(None)
    assert not levels.is_valid_color("red")
    assert not levels.is_valid_color("Pink")

    assert levels.is_valid_box_id("NE-2026-00001")
    assert not levels.is_valid_box_id("NE-26-00001")
    assert not levels.is_valid_box_id("XX-2026-00001")
    assert not levels.is_valid_box_id("")
    assert not levels.is_valid_box_id("NE-2026-00001\n")

import pytest
from pydantic import ValidationError

from serialflash.models import (
    MAX_FIRMWARE_SIZE,
    FlashOptions,
    Phase,
    ProgressEvent,
    build_phase_plan,
    format_bytes,
    parse_flash_offset,
    phase_ranges,
)


def test_phase_plan_with_erase():
    assert build_phase_plan(True) == [
        Phase.CONNECTING, Phase.SYNCING, Phase.ERASING, Phase.WRITING, Phase.VERIFYING, Phase.DONE
    ]


def test_phase_plan_without_erase():
    plan = build_phase_plan(False)
    assert Phase.ERASING not in plan
    assert plan == [Phase.CONNECTING, Phase.SYNCING, Phase.WRITING, Phase.VERIFYING, Phase.DONE]


def test_phase_plan_is_a_fresh_list():
    plan = build_phase_plan(True)
    plan.pop()
    assert build_phase_plan(True)[-1] == Phase.DONE


@pytest.mark.parametrize("erase, write_start", [(True, 30.0), (False, 20.0)])
def test_writing_window_follows_plan(erase, write_start):
    ranges = phase_ranges(build_phase_plan(erase))
    assert ranges[Phase.WRITING] == (write_start, 85.0)
    assert ranges[Phase.CONNECTING][0] == 0.0
    assert ranges[Phase.SYNCING][0] == 10.0
    assert ranges[Phase.VERIFYING][0] == 90.0
    assert ranges[Phase.DONE][0] == 100.0


def test_erasing_reports_midpoint():
    assert phase_ranges(build_phase_plan(True))[Phase.ERASING][0] == 20.0


def test_ranges_for_custom_plan_stay_ordered():
    # A plan with an extra pre-write phase still lays out monotonically.
    plan = [Phase.CONNECTING, Phase.SYNCING, Phase.ERASING, Phase.ERASING, Phase.WRITING, Phase.DONE]
    ranges = phase_ranges(plan)
    assert ranges[Phase.WRITING][0] == 40.0
    assert ranges[Phase.WRITING][1] == 85.0


@pytest.mark.parametrize("text, expected", [
    ("0x1000", 0x1000),
    ("0X10000", 0x10000),
    ("1000", 0x1000),
    (" 0x0 ", 0),
    (0x8000, 0x8000),
])
def test_parse_flash_offset(text, expected):
    assert parse_flash_offset(text) == expected


@pytest.mark.parametrize("bad", ["", "0xZZ", "hello", -1, "-0x10"])
def test_parse_flash_offset_rejects_garbage(bad):
    with pytest.raises(ValueError):
        parse_flash_offset(bad)


def test_from_user_input_defaults():
    options = FlashOptions.from_user_input(b"\x01\x02", baud_rate="", offset=None)
    assert options.baud_rate == 115200
    assert options.flash_offset == 0x1000
    assert options.erase_before_write is True
    assert options.total_bytes == 2


def test_options_reject_empty_firmware():
    with pytest.raises(ValidationError):
        FlashOptions.from_user_input(b"")


def test_options_reject_oversized_firmware():
    with pytest.raises(ValidationError):
        FlashOptions(firmware=b"\x00" * (MAX_FIRMWARE_SIZE + 1))


def test_options_accept_maximum_size():
    options = FlashOptions(firmware=b"\x00" * MAX_FIRMWARE_SIZE)
    assert options.total_bytes == MAX_FIRMWARE_SIZE


@pytest.mark.parametrize("baud", [0, -9600])
def test_options_reject_non_positive_baud(baud):
    with pytest.raises(ValidationError):
        FlashOptions.from_user_input(b"\x00", baud_rate=baud)


def test_options_reject_bad_offset():
    with pytest.raises(ValidationError):
        FlashOptions.from_user_input(b"\x00", offset="0xnope")


def test_options_are_immutable():
    options = FlashOptions.from_user_input(b"\x00")
    with pytest.raises(ValidationError):
        options.baud_rate = 9600


def test_progress_event_bounds():
    with pytest.raises(ValidationError):
        ProgressEvent(phase=Phase.WRITING, percent=101, bytes_written=0, total_bytes=1, message="x")
    with pytest.raises(ValidationError):
        ProgressEvent(phase=Phase.WRITING, percent=-1, bytes_written=0, total_bytes=1, message="x")


def test_progress_event_render():
    event = ProgressEvent(phase=Phase.DONE, percent=100, bytes_written=4, total_bytes=4, message="Flash completed successfully!")
    assert event.render() == "[Done] 100.0% Flash completed successfully!"


@pytest.mark.parametrize("size, expected", [
    (512, "512 B"),
    (4096, "4.0 KB"),
    (1536, "1.5 KB"),
    (3 * 1024 * 1024, "3.0 MB"),
])
def test_format_bytes(size, expected):
    assert format_bytes(size) == expected

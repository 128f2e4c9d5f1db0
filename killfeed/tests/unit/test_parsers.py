"""
Unit Tests for Line Splitting and Record Parsing
"""

from datetime import datetime, timezone

import pytest

from killfeed.parsers.line_splitter import split_lines
from killfeed.parsers.record_parser import parse_line, parse_log_line
from killfeed.utils.exceptions import ParseError


class TestSplitLines:
    """Partial-line safety"""

    def test_complete_lines(self):
        lines, remainder = split_lines(b"", b"a\nb\n")
        assert lines == [b"a", b"b"]
        assert remainder == b""

    def test_trailing_partial_line_is_held_back(self):
        lines, remainder = split_lines(b"", b"a\nb")
        assert lines == [b"a"]
        assert remainder == b"b"

    def test_no_newline_yields_only_remainder(self):
        lines, remainder = split_lines(b"par", b"tial")
        assert lines == []
        assert remainder == b"partial"

    def test_pending_joins_next_chunk(self):
        lines, remainder = split_lines(b"2025.06", b".03;x\nnext")
        assert lines == [b"2025.06.03;x"]
        assert remainder == b"next"

    def test_crlf_and_empty_lines(self):
        lines, remainder = split_lines(b"", b"a\r\n\r\nb\n")
        assert lines == [b"a", b"", b"b"]
        assert remainder == b""

    def test_empty_input(self):
        assert split_lines(b"", b"") == ([], b"")

    @pytest.mark.parametrize("size", [1, 2, 3, 7, 16, 1000])
    def test_chunk_boundaries_do_not_change_lines(self, size):
        data = b"first line\nsecond;line\n\nthird\npartial"
        whole, whole_rest = split_lines(b"", data)

        collected, pending = [], b""
        for start in range(0, len(data), size):
            lines, pending = split_lines(pending, data[start:start + size])
            collected.extend(lines)

        assert collected == whole
        assert pending == whole_rest == b"partial"


class TestParseLine:
    """Death-log CSV records"""

    def test_valid_line(self):
        record = parse_line("2025.06.03-01.45.48;Alpha;k1;Bravo;v1;AKM;152.34;PC;XSX")
        assert record.timestamp == datetime(2025, 6, 3, 1, 45, 48, tzinfo=timezone.utc)
        assert (record.killer, record.killer_id) == ("Alpha", "k1")
        assert (record.victim, record.victim_id) == ("Bravo", "v1")
        assert record.weapon == "AKM"
        assert record.distance == 152.3
        assert record.killer_platform == "PC"
        assert record.victim_platform == "XSX"

    def test_extra_trailing_fields_are_tolerated(self):
        record = parse_line("2025.06.03-01.45.48;Alpha;k1;Bravo;v1;AKM;10;PC;PC;future;fields")
        assert record.weapon == "AKM"
        assert record.distance == 10.0

    def test_optional_fields_may_be_absent(self):
        record = parse_line("2025-06-03 01:45:48;Alpha;k1;Bravo;v1;AKM")
        assert record.distance is None
        assert record.killer_platform is None

    def test_missing_mandatory_fields(self):
        with pytest.raises(ParseError) as exc:
            parse_line("2025.06.03-01.45.48;Alpha;k1;Bravo")
        assert "fields" in exc.value.reason

    def test_malformed_timestamp(self):
        with pytest.raises(ParseError) as exc:
            parse_line("yesterday;Alpha;k1;Bravo;v1;AKM;10")
        assert "timestamp" in exc.value.reason
        assert exc.value.line.startswith("yesterday")

    def test_missing_victim_id(self):
        with pytest.raises(ParseError):
            parse_line("2025.06.03-01.45.48;Alpha;k1;Bravo;;AKM;10")

    def test_empty_line(self):
        with pytest.raises(ParseError):
            parse_line("   ")

    def test_absent_killer_becomes_none(self):
        record = parse_line("2025.06.03-01.45.48;;;Bravo;v1;falling;0")
        assert record.killer is None
        assert record.killer_id is None

    def test_relocation_suicide_with_blank_victim_name(self):
        record = parse_line("2025.06.03-01.45.48;Alpha;k1;;k1;suicide_by_relocation;0")
        assert record.victim == "Alpha"

    def test_bad_distance_is_ignored(self):
        record = parse_line("2025.06.03-01.45.48;Alpha;k1;Bravo;v1;AKM;far")
        assert record.distance is None


class TestParseLogLine:
    """General server log events"""

    def test_player_connect(self):
        record = parse_log_line(
            "[2025.06.03-01.45.48:123][  0]LogOnline: Warning: Player |0002abc successfully registered!"
        )
        assert record.event_type == "player_connect"
        assert record.fields == {"player_id": "0002abc"}
        assert record.timestamp == datetime(2025, 6, 3, 1, 45, 48, 123000, tzinfo=timezone.utc)

    def test_player_queue(self):
        record = parse_log_line(
            "[2025.06.03-01.45.48:123][  1]LogNet: Join request: /Game/Maps/world_0/World_0?"
            "login=Alpha?password=?eosid=|00aa11?Name=Alpha?SplitscreenCount=1"
        )
        assert record.event_type == "player_queue"
        assert record.fields["player_id"] == "00aa11"
        assert record.fields["player_name"] == "Alpha"

    def test_player_disconnect(self):
        record = parse_log_line(
            "[2025.06.03-01.50.00:001][  2]LogNet: UChannel::Close: Sending CloseBunch. "
            "ChIndex == 0. Name: [UChannel] ChIndex: 0, UniqueId: EOS:|00aa11, Driver: GameNetDriver"
        )
        assert record.event_type == "player_disconnect"
        assert record.fields["player_id"] == "00aa11"

    def test_untracked_line_is_ignored(self):
        assert parse_log_line("[2025.06.03-01.45.48:123][  0]LogTemp: nothing to see") is None
        assert parse_log_line("Log file open, 06/03/25 01:45:48") is None

    def test_world_events_are_not_tracked(self):
        assert parse_log_line("[2025.06.03-01.45.48:123][  0]LogSFPS: AirDrop switched to Flying") is None
        assert parse_log_line(
            "[2025.06.03-01.45.48:123][  0]LogSFPS: Mission GA_Military_02_Mis1 switched to READY"
        ) is None

    def test_tracked_event_with_bad_timestamp(self):
        with pytest.raises(ParseError):
            parse_log_line("[not-a-time][  0]LogOnline: Warning: Player |0002abc successfully registered!")

"""
Unit Tests for Parser Validation
"""

import asyncio

from killfeed.parsers.validator import (
    CLASSIFICATION, FIELD_MAPPING, ISOLATION, PATH_RESOLUTION, ParserValidator
)
from killfeed.utils.exceptions import TransportErrorKind
from killfeed.utils.remote_log_source import DEATHLOG

from killfeed.tests.conftest import GUILD_ID, death_line, make_server


class TestParserValidator:
    """Per-component pass/fail report"""

    def test_healthy_setup_passes(self, repo, source, server):
        source.write(server, "deathlogs/2025.06.03.csv", death_line())
        report = asyncio.run(ParserValidator(repo, source).validate(GUILD_ID))

        assert report.success
        assert [check.name for check in report.checks] == [
            PATH_RESOLUTION, FIELD_MAPPING, CLASSIFICATION, ISOLATION
        ]

    def test_no_servers_fails_path_resolution(self, repo, source):
        report = asyncio.run(ParserValidator(repo, source).validate(GUILD_ID))

        assert not report.success
        assert not report.check(PATH_RESOLUTION).passed
        assert report.check(CLASSIFICATION).passed

    def test_missing_directory_is_reported(self, repo, source, server):
        source.missing_paths.add((server['server_id'], DEATHLOG))
        report = asyncio.run(ParserValidator(repo, source).validate(GUILD_ID))

        check = report.check(PATH_RESOLUTION)
        assert not check.passed
        assert "deathlog" in check.detail

    def test_unparseable_live_line_fails_field_mapping(self, repo, source, server):
        source.write(server, "deathlogs/2025.06.03.csv", b"01/02;broken\n")
        report = asyncio.run(ParserValidator(repo, source).validate(GUILD_ID))

        assert not report.check(FIELD_MAPPING).passed
        assert report.check(PATH_RESOLUTION).passed

    def test_unreachable_host_does_not_raise(self, repo, source, server):
        source.fail_with(TransportErrorKind.UNREACHABLE)
        report = asyncio.run(ParserValidator(repo, source).validate(GUILD_ID))

        assert not report.check(PATH_RESOLUTION).passed
        assert not report.check(FIELD_MAPPING).passed
        assert report.check(ISOLATION).passed

    def test_foreign_server_breaks_isolation(self, repo, source, server):
        repo.guilds[GUILD_ID]['servers'].append(make_server(guild_id=999, server_id="x"))
        report = asyncio.run(ParserValidator(repo, source).validate(GUILD_ID))

        check = report.check(ISOLATION)
        assert not check.passed
        assert "999" in check.detail

    def test_repository_failure_is_reported(self, repo, source):
        repo.fail("list_servers")
        report = asyncio.run(ParserValidator(repo, source).validate(GUILD_ID))

        assert len(report.checks) == 4
        assert not report.success

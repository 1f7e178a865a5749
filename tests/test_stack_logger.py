"""Tests for the dual-channel stack logger and its stream filters."""

import asyncio
import io
import threading
from unittest.mock import MagicMock

import pytest
from structlog.testing import capture_logs

from stackpilot.core.stack_logger import (
    STANDARD_MESSAGES,
    ComposeOutputFilter,
    StackLogger,
    StreamFilter,
)
from stackpilot.models import LogLevel


class TestChannels:
    """Every entry reaches the durable sink; only some reach the user."""

    @pytest.mark.parametrize(
        "line",
        [
            "a1b2c3d4e5f6: Pulling fs layer",
            "0123456789ab",
            "Digest: sha256:deadbeef",
            "Status: Downloaded newer image for alpine:latest",
            "Creating network doom_default",
            "Creating volume doom-code-server-config",
            "   ",
        ],
    )
    def test_noise_never_reaches_user_but_always_durable(self, stack_logger, user_stream, durable, line):
        entry = stack_logger.log(LogLevel.ERROR, "compose", line)

        assert not entry.user_visible
        assert user_stream.getvalue() == ""
        durable.error.assert_called_once()
        assert durable.error.call_args.args[0] == line

    def test_plain_pull_layer_line_is_noise(self, stack_logger):
        assert stack_logger.is_noise("a1b2c3d4e5f6: Pulling fs layer")
        assert stack_logger.is_noise("a1b2c3d4e5f6: Already exists")

    def test_below_min_level_is_durable_only(self, stack_logger, user_stream, durable):
        stack_logger.debug("detect", "probing containers")
        assert user_stream.getvalue() == ""
        durable.debug.assert_called_once()

    def test_raised_min_level_hides_info(self, stack_logger, user_stream):
        stack_logger.set_min_level(LogLevel.WARNING)
        stack_logger.info("detect", "probing containers")

        assert stack_logger.min_level is LogLevel.WARNING
        assert user_stream.getvalue() == ""

    def test_visible_entry_is_prefixed(self, stack_logger, user_stream):
        stack_logger.warning("detect", "something odd")
        assert user_stream.getvalue() == "[WARN]  something odd\n"

    def test_transform_rewrites_for_user_only(self, stack_logger, user_stream, durable):
        stack_logger.info("compose", "Container doom-claude Started")
        assert user_stream.getvalue() == "[INFO]  Started: doom-claude\n"
        assert durable.info.call_args.args[0] == "Container doom-claude Started"

    def test_first_transform_rule_wins(self, stack_logger):
        assert stack_logger.transform("latest: Pulling from linuxserver/code-server") == (
            "latest: Downloading image: linuxserver/code-server"
        )
        assert stack_logger.transform("nothing to rewrite") == "nothing to rewrite"

    def test_color_prefix(self, durable):
        stream = io.StringIO()
        logger = StackLogger(user_stream=stream, durable=durable, color=True)
        logger.error("engine", "boom")
        assert stream.getvalue() == "\033[31m[ERROR]\033[0m boom\n"

    def test_default_durable_sink_is_structlog(self, user_stream):
        logger = StackLogger(user_stream=user_stream, color=False)
        with capture_logs() as logs:
            logger.info("detect", "Found 2 containers")
        assert logs[0]["event"] == "Found 2 containers"
        assert logs[0]["source"] == "detect"
        assert logs[0]["log_level"] == "info"


class TestVerbose:
    def test_verbose_shows_noise_untransformed(self, stack_logger, user_stream):
        stack_logger.set_verbose(True)
        stack_logger.debug("compose", "Creating network doom_default")
        stack_logger.info("compose", "Container doom-claude Started")

        assert stack_logger.verbose
        assert user_stream.getvalue() == (
            "[DEBUG] Creating network doom_default\n" "[INFO]  Container doom-claude Started\n"
        )

    def test_leaving_verbose_restores_filtering(self, stack_logger, user_stream):
        stack_logger.set_verbose(True)
        stack_logger.set_verbose(False)
        stack_logger.info("compose", "Creating network doom_default")
        assert stack_logger.min_level == LogLevel.INFO
        assert user_stream.getvalue() == ""


class TestSinkFailures:
    def test_durable_failure_is_swallowed(self, user_stream):
        durable = MagicMock()
        durable.info.side_effect = RuntimeError("disk full")
        logger = StackLogger(user_stream=user_stream, durable=durable, color=False)

        logger.info("engine", "still works")

        assert user_stream.getvalue() == "[INFO]  still works\n"

    def test_closed_user_stream_is_swallowed(self, durable):
        stream = io.StringIO()
        stream.close()
        logger = StackLogger(user_stream=stream, durable=durable, color=False)

        logger.info("engine", "nobody listening")

        durable.info.assert_called_once()


class TestProgress:
    def test_progress_redraws_and_terminates(self, stack_logger, user_stream):
        stack_logger.progress("pull", "Pulling images... (1 layers)")
        stack_logger.progress("pull", "Pulling images... (2 layers)")
        stack_logger.progress_done()
        stack_logger.progress_done()

        assert user_stream.getvalue() == (
            "\rPulling images... (1 layers)\rPulling images... (2 layers)\n"
        )

    def test_progress_is_logged_at_info_durably(self, stack_logger, durable):
        stack_logger.progress("pull", "Pulling images... (1 layers)")
        durable.info.assert_called_once()


class TestEntries:
    def test_buffer_is_bounded(self, durable):
        logger = StackLogger(durable=durable, max_entries=3)
        for i in range(5):
            logger.info("engine", f"message {i}")

        assert [entry.message for entry in logger.entries()] == ["message 2", "message 3", "message 4"]

    def test_entries_filter_by_level(self, stack_logger):
        stack_logger.debug("engine", "d")
        stack_logger.warning("engine", "w")
        stack_logger.error("engine", "e")

        assert [entry.message for entry in stack_logger.entries(LogLevel.WARNING)] == ["w", "e"]
        assert [entry.message for entry in stack_logger.user_entries()] == ["w", "e"]

    def test_entry_serializes_level_lowercase(self, stack_logger):
        entry = stack_logger.log(LogLevel.WARNING, "engine", "careful")
        assert entry.model_dump(mode="json")["level"] == "warning"

    def test_announce_logs_message_and_details(self, stack_logger, user_stream):
        stack_logger.announce("port_conflict", source="detect")

        messages = [entry.message for entry in stack_logger.entries()]
        assert messages == [
            STANDARD_MESSAGES["port_conflict"].message,
            STANDARD_MESSAGES["port_conflict"].details,
        ]
        assert user_stream.getvalue() == "[WARN]  Port conflict detected\n"

    def test_concurrent_writers(self, durable):
        logger = StackLogger(durable=durable, max_entries=10_000)

        def write(source):
            for i in range(200):
                logger.info(source, f"{source} {i}")

        threads = [threading.Thread(target=write, args=(f"t{n}",)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(logger.entries()) == 800


def _reader(lines: list[str]) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    for line in lines:
        reader.feed_data(f"{line}\n".encode())
    reader.feed_eof()
    return reader


@pytest.mark.asyncio
class TestStreamFilter:
    """Classification of live subprocess output."""

    async def test_pull_progress_is_coalesced(self, stack_logger, user_stream):
        stream_filter = StreamFilter(stack_logger, "pull")
        await stream_filter.process(
            _reader(
                [
                    "latest: Pulling from linuxserver/code-server",
                    "aaa111: Pulling fs layer",
                    "bbb222: Pulling fs layer",
                    "aaa111: Downloading [=>   ]  1MB/10MB",
                    "aaa111: Pull complete",
                    "bbb222: Already exists",
                    "Digest: sha256:0123",
                    "Status: Downloaded newer image for linuxserver/code-server:latest",
                ]
            )
        )

        progress = [e for e in stack_logger.entries() if e.level == LogLevel.PROGRESS]
        assert progress[-1].message == "Pulling images... (3 layers)"
        assert stream_filter.layers_seen == 0
        # Status trailer is noise for the user but still recorded
        assert stack_logger.entries()[-1].message.startswith("Status: Downloaded")

    async def test_lines_are_classified(self, stack_logger):
        await StreamFilter(stack_logger, "up").process(
            _reader(
                [
                    "Container doom-code-server Created",
                    "Error response from daemon: port is already allocated",
                    "WARNING: The TS_AUTHKEY variable is not set",
                    "something unremarkable",
                ]
            )
        )

        levels = [(entry.level, entry.message.split()[0]) for entry in stack_logger.entries()]
        assert levels == [
            (LogLevel.INFO, "Container"),
            (LogLevel.ERROR, "Error"),
            (LogLevel.WARNING, "WARNING:"),
            (LogLevel.DEBUG, "something"),
        ]

    async def test_progress_line_closed_at_eof(self, stack_logger, user_stream):
        await StreamFilter(stack_logger, "pull").process(_reader(["aaa111: Pulling fs layer"]))
        assert user_stream.getvalue().endswith("\n")

    async def test_two_streams_share_one_logger(self, stack_logger):
        out = StreamFilter(stack_logger, "up")
        err = StreamFilter(stack_logger, "up")
        await asyncio.gather(
            out.process(_reader([f"line {i}" for i in range(50)])),
            err.process(_reader([f"warn {i}" for i in range(50)])),
        )
        assert len(stack_logger.entries()) == 100


class TestComposeOutputFilter:
    def test_only_pull_start_is_shown(self, stack_logger):
        compose_filter = ComposeOutputFilter(stack_logger, "compose")
        compose_filter.filter_line("code-server Pulling")
        compose_filter.filter_line("code-server Pulling fs layer")
        compose_filter.filter_line("a1b2c3: Extracting")

        assert [entry.message for entry in stack_logger.entries()] == ["code-server Pulling"]

    def test_show_pull_passes_layers_through(self, stack_logger):
        compose_filter = ComposeOutputFilter(stack_logger, "compose", show_pull=True)
        compose_filter.filter_line("a1b2c3: Extracting")
        assert stack_logger.entries()[0].level == LogLevel.DEBUG

    def test_build_steps(self, stack_logger):
        ComposeOutputFilter(stack_logger, "compose").filter_line("Step 1/5 : FROM alpine")
        ComposeOutputFilter(stack_logger, "compose", show_build=False).filter_line(" ---> abc")
        assert [entry.level for entry in stack_logger.entries()] == [LogLevel.INFO, LogLevel.DEBUG]

    def test_container_network_and_errors(self, stack_logger):
        compose_filter = stack_logger.compose_filter("compose")
        compose_filter.filter_line("Container doom-claude Started")
        compose_filter.filter_line("Network doom_default Created")
        compose_filter.filter_line("error while creating mount source path")

        assert [entry.level for entry in stack_logger.entries()] == [
            LogLevel.INFO,
            LogLevel.DEBUG,
            LogLevel.ERROR,
        ]

"""
Main entry point for transcode-mirror.

This script parses the command-line arguments, configures the logger, loads the
settings file, checks that ffmpeg can be started, and runs one synchronization
pass over the configured libraries.

Exit codes:
    0   every job succeeded
    1   some jobs failed or some albums could not be scanned
    2   configuration error or fatal error (e.g. a state file could not be saved)
    130 the run was cancelled (Ctrl+C)
"""

import sys

from loguru import logger
from rich.text import Text

from transcode_mirror.cli import get_args
from transcode_mirror.config.common import EXIT_CANCELLED, EXIT_FATAL, LOGGER_FORMAT
from transcode_mirror.config.settings import load_settings
from transcode_mirror.domain.exceptions import (
    ConfigurationException,
    StateStoreException,
    ToolExecutionException,
)
from transcode_mirror.pipeline.sync_pipeline import LibrarySyncPipeline, log_summary
from transcode_mirror.services.progress import DashboardConsumer, create_consumer
from transcode_mirror.services.transcoder import FfmpegTranscoder


# Configure the logger for initial setup.
# The level is overridden once the command-line arguments are parsed.
logger.remove()
logger.add(sys.stderr, level="INFO", format=LOGGER_FORMAT)


def configure_logger(log_level: str, consumer=None) -> None:
    """
    Sends log output to stderr, or through the dashboard's console while the
    dashboard is shown so log lines appear above the live display.
    """
    logger.remove()
    if isinstance(consumer, DashboardConsumer):
        console = consumer.console
        logger.add(
            lambda message: console.print(Text.from_ansi(str(message).rstrip("\n"))),
            level=log_level,
            format=LOGGER_FORMAT,
            colorize=True,
        )
    else:
        logger.add(sys.stderr, level=log_level, format=LOGGER_FORMAT)


def main(argv=None) -> int:
    """
    Runs transcode-mirror and returns the process exit code.

    Steps:
    1. Parse command-line arguments and configure the logger.
    2. Load and validate the settings file.
    3. Verify the ffmpeg binary (unless `--skip-tool-check`).
    4. Run the synchronization pipeline and log its summary.
    """
    args = get_args(argv)
    configure_logger(args.log_level)
    logger.debug(f"Parsed arguments: {args}")

    try:
        settings = load_settings(args.config)
        ffmpeg_config = settings.ffmpeg
        transcoder = FfmpegTranscoder(
            binary=ffmpeg_config.binary,
            args_template=ffmpeg_config.audio_transcoding_args,
            output_extension=ffmpeg_config.audio_transcoding_output_extension,
            report_progress=ffmpeg_config.report_progress,
            ffprobe_binary=ffmpeg_config.ffprobe_binary,
        )
        if not args.skip_tool_check:
            transcoder.verify_binary()

        consumer = create_consumer(args.display)
        pipeline = LibrarySyncPipeline(
            settings,
            transcoder,
            consumer,
            library_names=args.libraries,
            workers=args.workers,
        )
    except (ConfigurationException, ToolExecutionException) as e:
        logger.error(f"Cannot start: {e}")
        return EXIT_FATAL

    logger.info(
        f"Synchronizing {len(pipeline.libraries)} librar{'y' if len(pipeline.libraries) == 1 else 'ies'} "
        f"into {settings.output_library_path}"
    )

    configure_logger(args.log_level, consumer)
    try:
        summary = pipeline.run()
    except StateStoreException as e:
        logger.critical(f"Run aborted, state could not be saved: {e}")
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl+C) before jobs started.")
        return EXIT_CANCELLED
    finally:
        configure_logger(args.log_level)

    log_summary(summary)
    return summary.exit_code


if __name__ == "__main__":
    sys.exit(main())

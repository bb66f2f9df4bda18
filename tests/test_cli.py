"""
Tests for argument parsing and the main entry point.
"""

import sys

import pytest
import yaml

import main
from conftest import make_file
from transcode_mirror.cli import get_args
from transcode_mirror.config.common import DEFAULT_CONFIG_PATH, EXIT_FATAL, EXIT_OK


@pytest.mark.unit
class TestGetArgs:
    """Command-line parsing."""

    def test_defaults(self):
        args = get_args([])

        assert args.config == DEFAULT_CONFIG_PATH
        assert args.workers is None
        assert args.display == "fancy"
        assert args.libraries is None
        assert not args.skip_tool_check

    def test_bare_and_libraries(self):
        args = get_args(["--bare", "--workers", "3", "--libraries", "Lossless", "lossy"])

        assert args.display == "bare"
        assert args.workers == 3
        assert args.libraries == ["Lossless", "lossy"]

    def test_bare_and_fancy_are_exclusive(self):
        with pytest.raises(SystemExit):
            get_args(["--bare", "--fancy"])

    def test_zero_workers_is_an_error(self):
        with pytest.raises(SystemExit):
            get_args(["--workers", "0"])


@pytest.mark.integration
class TestMain:
    """Running the whole program with the Python interpreter standing in for ffmpeg."""

    def _write_config(self, tmp_path):
        config = {
            "paths": {"output_library_path": str(tmp_path / "output")},
            "tools": {
                "ffmpeg": {
                    "binary": sys.executable,
                    "audio_transcoding_args": [
                        "-c",
                        "import shutil, sys; shutil.copyfile(sys.argv[1], sys.argv[2])",
                        "{INPUT_FILE}",
                        "{OUTPUT_FILE}",
                    ],
                    "report_progress": False,
                }
            },
            "transcode": {"workers": 2, "max_retries": 0, "retry_delay_seconds": 0},
            "libraries": {
                "lossless": {
                    "name": "Lossless",
                    "path": str(tmp_path / "library"),
                    "transcoding": {"audio_file_extensions": ["flac"], "other_file_extensions": ["jpg"]},
                }
            },
        }
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
        return config_path

    def test_missing_config_is_fatal(self, tmp_path):
        assert main.main(["--bare", "--config", str(tmp_path / "missing.yaml")]) == EXIT_FATAL

    def test_full_run(self, tmp_path):
        make_file(tmp_path / "library" / "Artist" / "Album" / "01.flac", b"audio")
        make_file(tmp_path / "library" / "Artist" / "Album" / "cover.jpg", b"cover")
        config_path = self._write_config(tmp_path)

        exit_code = main.main(["--bare", "--skip-tool-check", "--config", str(config_path)])

        assert exit_code == EXIT_OK
        album = tmp_path / "output" / "Artist" / "Album"
        assert (album / "01.mp3").read_bytes() == b"audio"
        assert (album / "cover.jpg").read_bytes() == b"cover"
        assert (tmp_path / "library" / "Artist" / "Album" / ".album.source-state.yml").is_file()

    def test_unknown_library_is_fatal(self, tmp_path):
        config_path = self._write_config(tmp_path)
        (tmp_path / "library").mkdir()

        exit_code = main.main(["--bare", "--skip-tool-check", "--config", str(config_path), "--libraries", "Vinyl"])

        assert exit_code == EXIT_FATAL

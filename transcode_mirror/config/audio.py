"""
Configuration settings related to audio processing.

This module defines the default extension allow-lists used to classify album
files and the default ffmpeg invocation used to transcode audio. Every value
here can be overridden per library (extensions) or globally (ffmpeg) in the
user's settings file.
"""

# ======================================================================================
# File Classification
# ======================================================================================

# Extensions (lowercase, without the leading dot) of files that count as audio files
# and are transcoded into the output format.
DEFAULT_AUDIO_EXTENSIONS = ("mp3", "flac", "alac", "m4a", "ogg", "opus", "wav")

# Extensions of files that count as data files and are copied over unchanged
# (cover art and similar).
DEFAULT_DATA_EXTENSIONS = ("png", "jpg", "jpeg", "gif", "webp")

# NOTE: Every other file is untracked and ignored during transcoding.


# ======================================================================================
# Audio Transcoding Parameters
# ======================================================================================

# The ffmpeg executable. A bare name relies on the system PATH.
DEFAULT_FFMPEG_BINARY = "ffmpeg"
DEFAULT_FFPROBE_BINARY = "ffprobe"

# Placeholders substituted with absolute paths for each transcode job.
INPUT_FILE_PLACEHOLDER = "{INPUT_FILE}"
OUTPUT_FILE_PLACEHOLDER = "{OUTPUT_FILE}"

# Arguments passed to ffmpeg for one audio file: MP3 V0 through LAME, no video
# streams (embedded cover art is dropped, covers are copied as data files).
DEFAULT_AUDIO_TRANSCODING_ARGS = (
    "-i", INPUT_FILE_PLACEHOLDER,
    "-vn",
    "-codec:a", "libmp3lame",
    "-q:a", "0",
    "-y",
    OUTPUT_FILE_PLACEHOLDER,
)

# Extension of transcoded audio files (must match what the arguments above produce).
DEFAULT_AUDIO_OUTPUT_EXTENSION = "mp3"

from reelhouse.services.probe import (
    DEFAULT_PROBE,
    ffmpeg_thumbnail_cmd,
    ffprobe_cmd,
    parse_probe_output,
)


def test_parse_probe_output_reads_dimensions_and_duration():
    result = parse_probe_output(["1920,1080,12.480000"])

    assert (result.width, result.height) == (1920, 1080)
    assert result.duration_seconds == 12.48
    assert result.duration_whole_seconds == 12
    assert result.probed


def test_parse_probe_output_treats_na_duration_as_zero():
    result = parse_probe_output(["1280,720,N/A"])
    assert result.duration_seconds == 0.0

    result = parse_probe_output(["640,360"])
    assert (result.width, result.height, result.duration_seconds) == (640, 360, 0.0)


def test_parse_probe_output_skips_noise_lines():
    lines = ["[mov,mp4] stream 1: unsupported codec", "", "854,480,3.2"]
    result = parse_probe_output(lines)
    assert (result.width, result.height) == (854, 480)


def test_parse_probe_output_without_usable_dimensions():
    assert parse_probe_output([]) is None
    assert parse_probe_output(["N/A,N/A,N/A"]) is None
    assert parse_probe_output(["0,0,10"]) is None


def test_default_probe_is_1080p():
    assert (DEFAULT_PROBE.width, DEFAULT_PROBE.height) == (1920, 1080)
    assert DEFAULT_PROBE.duration_seconds == 0
    assert not DEFAULT_PROBE.probed


def test_ffprobe_cmd_selects_first_video_stream():
    cmd = ffprobe_cmd("ffprobe", "/data/in.mp4")

    assert cmd[0] == "ffprobe"
    assert cmd[-1] == "/data/in.mp4"
    assert "v:0" in cmd
    assert "stream=width,height,duration" in cmd


def test_thumbnail_cmd_seeks_before_input():
    cmd = ffmpeg_thumbnail_cmd("ffmpeg", src_path="/in.mp4", dst_path="/out.jpg", seek_seconds=5, width=640)

    assert cmd.index("-ss") < cmd.index("-i")
    assert cmd[cmd.index("-ss") + 1] == "5"
    assert "scale=640:-2" in cmd
    assert cmd[-1] == "/out.jpg"


def test_thumbnail_cmd_without_seek():
    cmd = ffmpeg_thumbnail_cmd("ffmpeg", src_path="/in.mp4", dst_path="/out.jpg", seek_seconds=0, width=320)
    assert "-ss" not in cmd
    assert cmd[cmd.index("-vframes") + 1] == "1"


def test_parse_probe_output_rejects_non_finite_numbers():
    assert parse_probe_output(["nan,nan,10"]) is None
    assert parse_probe_output(["1e400,720,3"]) is None
    assert parse_probe_output(["inf,1080,3"]) is None

    result = parse_probe_output(["1280,720,nan"])
    assert (result.width, result.height, result.duration_seconds) == (1280, 720, 0.0)

    result = parse_probe_output(["nan,nan,1", "640,360,inf"])
    assert (result.width, result.height, result.duration_seconds) == (640, 360, 0.0)

import shutil
from pathlib import Path

import pytest

from adreel.errors import TransformError
from adreel.services import media


class FakeRunner:
    """Records argv and writes `output` to the last argument, like ffmpeg does."""

    def __init__(self, output=b"out-bytes", stdout=""):
        self.calls = []
        self.output = output
        self.stdout = stdout
        self.inputs = {}

    async def __call__(self, cmd):
        self.calls.append(cmd)
        scratch = Path(cmd[-1]).parent
        for path in scratch.iterdir():
            if path.is_file():
                self.inputs[path.name] = path.read_bytes()
        if self.output is not None:
            Path(cmd[-1]).write_bytes(self.output)
        return self.stdout, ""


class TestTextHelpers:
    def test_format_srt_time(self):
        assert media.format_srt_time(0) == "00:00:00,000"
        assert media.format_srt_time(3.5) == "00:00:03,500"
        assert media.format_srt_time(3725.042) == "01:02:05,042"

    def test_generate_srt_one_cue_per_sentence(self):
        srt = media.generate_srt("Fresh rice. Cooks fast! Order now?", seconds_per_cue=2)
        assert srt.splitlines()[:3] == ["1", "00:00:00,000 --> 00:00:02,000", "Fresh rice"]
        assert "3\n00:00:04,000 --> 00:00:06,000\nOrder now" in srt

    def test_generate_srt_empty_script(self):
        assert media.generate_srt("  ...  ") == ""

    def test_hex_to_ass_color(self):
        assert media.hex_to_ass_color("#FF8800") == "&H000088FF"
        assert media.hex_to_ass_color("#000000", 0x80) == "&H80000000"
        assert media.hex_to_ass_color("not-a-color") == "&H00FFFFFF"

    def test_escape_drawtext(self):
        assert media.escape_drawtext("Sale: 50% off, it's here") == "Sale\\: 50\\% off\\, it\\'s here"


class TestFilters:
    def test_subtitle_filter_alignment(self):
        style = media.SubtitleStyle.from_request("large", "top", "#FFFF00")
        flt = media.build_subtitle_filter(Path("/tmp/captions.srt"), style)
        assert flt.startswith("subtitles=/tmp/captions.srt:force_style='")
        assert "Alignment=8" in flt
        assert "FontSize=32" in flt
        assert "PrimaryColour=&H0000FFFF" in flt

    def test_subtitle_style_defaults_unknown_position(self):
        style = media.SubtitleStyle.from_request(None, "sideways", None)
        assert style.position == "bottom"
        assert style.font_size == 24

    def test_watermark_filter(self):
        flt = media.build_watermark_filter(media.WatermarkOptions(text="@shop", position="top-left", opacity=2))
        assert "text='@shop'" in flt
        assert "x=10:y=10" in flt
        assert "fontcolor=white@1.0" in flt

    def test_scale_filter_pads_to_profile(self):
        flt = media.build_scale_filter(media.get_profile("youtube"))
        assert flt == "scale=1920:1080:force_original_aspect_ratio=decrease,pad=1920:1080:(ow-iw)/2:(oh-ih)/2"


class TestProfiles:
    def test_known_profiles(self):
        assert media.get_profile("TikTok").height == 1920
        assert media.get_profile("instagram").video_bitrate == "3.5M"

    def test_unknown_profile(self):
        with pytest.raises(ValueError):
            media.get_profile("myspace")

    def test_profile_for_aspect_ratio(self):
        assert media.profile_for_aspect_ratio("16:9").name == "youtube"
        assert media.profile_for_aspect_ratio("1:1").name == "tiktok"


class TestTransforms:
    async def test_mux_voiceover_maps_streams(self):
        runner = FakeRunner(output=b"muxed")
        result = await media.mux_voiceover(b"video", b"voice", runner=runner)

        assert result == b"muxed"
        cmd = runner.calls[0]
        assert cmd[cmd.index("-c:v") + 1] == "copy"
        assert "-shortest" in cmd
        assert runner.inputs == {"input.mp4": b"video", "voice.mp3": b"voice"}

    async def test_burn_subtitles_writes_srt(self):
        runner = FakeRunner()
        await media.burn_subtitles(b"video", "First line. Second line.", runner=runner)

        assert runner.inputs["captions.srt"].decode().startswith("1\n00:00:00,000 --> 00:00:03,000\nFirst line")
        assert any(arg.startswith("subtitles=") for arg in runner.calls[0])

    async def test_burn_subtitles_rejects_empty_script(self):
        with pytest.raises(TransformError):
            await media.burn_subtitles(b"video", "", runner=FakeRunner())

    async def test_optimize_uses_profile(self):
        runner = FakeRunner()
        await media.optimize_for_platform(b"video", "facebook", runner=runner)

        cmd = runner.calls[0]
        assert cmd[cmd.index("-b:v") + 1] == "6M"
        assert cmd[cmd.index("-r") + 1] == "30"
        assert "+faststart" in cmd

    async def test_background_music_volume(self):
        runner = FakeRunner()
        await media.add_background_music(b"video", b"music", 0.25, runner=runner)
        graph = runner.calls[0][runner.calls[0].index("-filter_complex") + 1]
        assert graph.startswith("[1:a]volume=0.25[music]")

    async def test_thumbnail_offset(self):
        runner = FakeRunner(output=b"jpeg")
        assert await media.extract_thumbnail(b"video", 0.5, runner=runner) == b"jpeg"
        cmd = runner.calls[0]
        assert cmd[cmd.index("-ss") + 1] == "0.500"

    async def test_get_duration_parses_probe(self):
        runner = FakeRunner(output=None, stdout='{"format": {"duration": "15.023"}}')
        assert await media.get_duration(b"video", runner=runner) == pytest.approx(15.023)

    async def test_get_duration_bad_probe(self):
        runner = FakeRunner(output=None, stdout="{}")
        with pytest.raises(TransformError):
            await media.get_duration(b"video", runner=runner)

    async def test_missing_output_is_an_error(self):
        runner = FakeRunner(output=b"")
        with pytest.raises(TransformError):
            await media.add_watermark(b"video", media.WatermarkOptions(text="x"), runner=runner)

    async def test_scratch_dir_is_removed(self):
        runner = FakeRunner()
        await media.mux_voiceover(b"video", b"voice", runner=runner)
        assert not Path(runner.calls[0][-1]).parent.exists()

    async def test_placeholder_resolution(self):
        runner = FakeRunner()
        await media.generate_placeholder_video(5, "1:1", runner=runner)
        assert any("s=1080x1080" in arg for arg in runner.calls[0])


requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg not installed",
)


@requires_ffmpeg
class TestRealTranscoder:
    async def test_placeholder_optimize_and_probe(self):
        clip = await media.generate_placeholder_video(2, "16:9")
        optimized = await media.optimize_for_platform(clip, media.get_profile("youtube"))
        duration = await media.get_duration(optimized)
        thumb = await media.extract_thumbnail(optimized, 0.5)

        assert 1.5 <= duration <= 2.5
        assert thumb[:2] == b"\xff\xd8"

    async def test_bad_input_raises_transform_error(self):
        with pytest.raises(TransformError) as exc_info:
            await media.extract_thumbnail(b"not a video")
        assert exc_info.value.returncode not in (None, 0)

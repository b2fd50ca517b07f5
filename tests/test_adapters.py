from adapters.chromium import embed_url_for
from adapters.media import classify_upload, probe_media


def test_embed_url_for_youtube_and_vimeo():
    youtube = embed_url_for("https://www.youtube.com/watch?v=abc123&t=10")
    assert youtube.startswith("https://www.youtube.com/embed/abc123?autoplay=1&mute=1")
    assert "playlist=abc123" in youtube
    assert embed_url_for("https://youtu.be/xyz").startswith("https://www.youtube.com/embed/xyz?")
    assert "origin=http%3A%2F%2Flocalhost" in embed_url_for("https://youtu.be/xyz", "http://localhost")

    vimeo = embed_url_for("https://vimeo.com/76979871")
    assert vimeo.startswith("https://player.vimeo.com/video/76979871?autoplay=1&muted=1")

    assert embed_url_for("https://example.com/menu") == "https://example.com/menu"


def test_classify_upload():
    assert classify_upload("clip.mp4", "video/mp4") == "video/mp4"
    assert classify_upload("poster.PNG", "application/octet-stream") == "image/png"
    assert classify_upload("notes.txt", "text/plain") is None
    assert classify_upload("", None) is None


def test_probe_media_without_ffprobe(tmp_path):
    target = tmp_path / "clip.mp4"
    target.write_bytes(b"\x00")
    assert probe_media(target, "video", ffprobe_binary=str(tmp_path / "missing-ffprobe")) == {}

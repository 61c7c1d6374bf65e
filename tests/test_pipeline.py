from __future__ import annotations

import base64
import re
from pathlib import Path
from typing import List, Optional

import pytest
import requests

from webarchive_singlefile import (
    HtmlRenderer,
    Settings,
    build_session,
    convert_file,
    convert_webarchive,
    main,
    output_path,
)


def _mhtml(png: bytes) -> bytes:
    lines = [
        "From: <Saved by Blink>",
        "Snapshot-Content-Location: http://ex.com/page",
        "MIME-Version: 1.0",
        'Content-Type: multipart/related; type="text/html"; boundary="----B1"',
        "",
        "------B1",
        "Content-Type: text/html",
        "Content-Transfer-Encoding: quoted-printable",
        "Content-Location: http://ex.com/page",
        "",
        '<html><head><link rel=3D"stylesheet" href=3D"style.css"></head>'
        '<body><img src=3D"img/a.png"><iframe src=3D"cid:frame-1@mhtml.blink"></iframe></body></html>',
        "------B1",
        "Content-Type: text/css",
        "Content-Location: http://ex.com/style.css",
        "",
        'body { background: url("img/a.png"); }',
        "------B1",
        "Content-Type: image/png",
        "Content-Transfer-Encoding: base64",
        "Content-Location: http://ex.com/img/a.png",
        "",
        base64.b64encode(png).decode("ascii"),
        "------B1",
        "Content-Type: text/html",
        "Content-ID: <frame-1@mhtml.blink>",
        "Content-Location: http://ex.com/frame.html",
        "",
        "<p>frame</p>",
        "------B1--",
        "",
    ]
    return "\r\n".join(lines).encode("ascii")


def _record(url: str, mime: str, data: bytes) -> dict:
    return {"WebResourceURL": url, "WebResourceMIMEType": mime, "WebResourceData": data}


def _data_uris(html: str) -> List[str]:
    return re.findall(r'(?:src|href)="(data:[^"]+)"', html)


class ProxyRenderer(HtmlRenderer):
    """Loads one extra asset through the capture proxy and returns fixed markup."""

    def __init__(self, asset_url: str, markup: str, snapshot: Optional[bytes] = None):
        self.asset_url = asset_url
        self.markup = markup
        self.snapshot = snapshot
        self.calls: List[str] = []

    def _load(self, proxy_url: str) -> None:
        with requests.Session() as s:
            s.trust_env = False
            r = s.get(self.asset_url, proxies={"http": proxy_url}, timeout=10)
            r.raise_for_status()

    def render(self, url: str, proxy_url: str) -> Optional[str]:
        self.calls.append(url)
        self._load(proxy_url)
        return self.markup

    def render_snapshot(self, url: str, proxy_url: str) -> Optional[bytes]:
        self.calls.append(url)
        return self.snapshot


class FailingRenderer(HtmlRenderer):
    def render(self, url: str, proxy_url: str) -> Optional[str]:
        return None


def _offline_session() -> requests.Session:
    s = build_session()
    s.trust_env = False
    return s


def test_mhtml_is_converted_to_single_file(tmp_path: Path, png: bytes) -> None:
    src = tmp_path / "page.mhtml"
    src.write_bytes(_mhtml(png))

    out = convert_file(src, Settings(render=False, fetch_missing=False))

    assert out == tmp_path / "page.html"
    html = out.read_text(encoding="utf-8")
    assert 'src="http://ex.com/frame.html"' in html
    uris = _data_uris(html)
    assert any(u.startswith("data:image/png;base64,") for u in uris)
    css = next(u for u in uris if u.startswith("data:text/css;base64,"))
    inlined = base64.b64decode(css.split(",", 1)[1]).decode("utf-8")
    assert "data:image/png;base64," in inlined


def test_webarchive_without_render_rewrites_archived_document(write_webarchive, tmp_path: Path, png: bytes) -> None:
    src = write_webarchive(
        {
            "WebMainResource": _record(
                "https://ex.com/page", "text/html", b'<html><body><img src="/a.png"></body></html>'
            ),
            "WebSubresources": [_record("https://ex.com/a.png", "image/png", png)],
        }
    )
    settings = Settings(render=False, fetch_missing=False, output_dir=str(tmp_path / "out"))

    out = convert_file(src, settings)

    assert out == tmp_path / "out" / "page.html"
    assert out.read_text(encoding="utf-8").count("data:image/png;base64,") == 1


def test_rendered_assets_are_captured_through_proxy(write_webarchive, origin_server, png: bytes) -> None:
    origin, hits = origin_server
    src = write_webarchive(
        {
            "WebMainResource": _record(f"{origin}/page", "text/html", b"<html></html>"),
            "WebSubresources": [_record(f"{origin}/cached.png", "image/png", b"archived")],
        }
    )
    markup = f'<html><body><img src="{origin}/late.png"><img src="cached.png"></body></html>'
    renderer = ProxyRenderer(f"{origin}/late.png", markup)
    settings = Settings(fetch_missing=False, capture_wait=5)

    html = convert_webarchive(src, settings, renderer, _offline_session())

    assert renderer.calls == [f"{origin}/page"]
    uris = _data_uris(html)
    assert len(uris) == 2
    assert base64.b64decode(uris[0].split(",", 1)[1]) == png
    assert base64.b64decode(uris[1].split(",", 1)[1]) == b"archived"
    assert hits["/late.png"] == 1
    assert "/cached.png" not in hits


def test_snapshot_mode_merges_archived_resources(write_webarchive, png: bytes) -> None:
    src = write_webarchive(
        {
            "WebMainResource": _record("http://ex.com/page", "text/html", b"<html></html>"),
            "WebSubresources": [_record("http://ex.com/only-archived.png", "image/png", png)],
        }
    )
    snapshot = "\r\n".join(
        [
            "Snapshot-Content-Location: http://ex.com/page",
            "MIME-Version: 1.0",
            'Content-Type: multipart/related; boundary="B"',
            "",
            "--B",
            "Content-Type: text/html",
            "Content-Location: http://ex.com/page",
            "",
            '<html><body><img src="only-archived.png"></body></html>',
            "--B--",
            "",
        ]
    ).encode("ascii")
    renderer = ProxyRenderer("", "", snapshot=snapshot)
    settings = Settings(snapshot=True, fetch_missing=False, capture_wait=1)

    html = convert_webarchive(src, settings, renderer, _offline_session())

    assert 'src="data:image/png;base64,' in html


def test_failed_render_falls_back_to_archived_document(write_webarchive, png: bytes) -> None:
    src = write_webarchive(
        {
            "WebMainResource": _record("http://ex.com/page", "text/html", b'<html><body><img src="a.png"></body></html>'),
            "WebSubresources": [_record("http://ex.com/a.png", "image/png", png)],
        }
    )

    html = convert_webarchive(src, Settings(fetch_missing=False, capture_wait=1), FailingRenderer(), _offline_session())

    assert 'src="data:image/png;base64,' in html


def test_output_path() -> None:
    assert output_path(Path("/a/b/page.webarchive"), Settings()) == Path("/a/b/page.html")
    assert output_path(Path("/a/b/page.mht"), Settings(output_dir="/out")) == Path("/out/page.html")


def test_cli_converts_given_files(tmp_path: Path, png: bytes) -> None:
    src = tmp_path / "page.mhtml"
    src.write_bytes(_mhtml(png))

    assert main([str(src), "--no-render", "--offline"]) == 0
    assert (tmp_path / "page.html").exists()


def test_cli_reports_failures(tmp_path: Path) -> None:
    broken = tmp_path / "broken.webarchive"
    broken.write_bytes(b"not a plist")

    assert main([str(broken), "--no-render", "--offline"]) == 1
    assert not (tmp_path / "broken.html").exists()


def test_cli_without_inputs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    assert main(["--no-render"]) == 2


def test_cli_about(capsys: pytest.CaptureFixture) -> None:
    assert main(["--about"]) == 0
    assert "webarchive-singlefile" in capsys.readouterr().out


def test_cli_reads_config_file(tmp_path: Path, png: bytes) -> None:
    src = tmp_path / "page.mhtml"
    src.write_bytes(_mhtml(png))
    cfg = tmp_path / "config.toml"
    cfg.write_text(
        '[render]\nno_render = true\n\n[network]\noffline = true\n\n[output]\noutput_dir = "{}"\n'.format(
            (tmp_path / "out").as_posix()
        ),
        encoding="utf-8",
    )

    assert main(["--config", str(cfg), str(src)]) == 0
    assert (tmp_path / "out" / "page.html").exists()

from __future__ import annotations

import threading

from webarchive_singlefile import (
    Resource,
    ResourceTable,
    absolute_ref,
    complete_ref,
    relative_ref,
)


def test_first_writer_wins() -> None:
    table = ResourceTable()
    first = Resource(mime_type="image/png", url="http://ex.com/a.png", data=b"one")
    second = Resource(mime_type="image/png", url="http://ex.com/a.png", data=b"two")

    assert table.add(first, "http://ex.com/a.png") == 1
    assert table.add(second, "http://ex.com/a.png") == 0
    assert table.get("http://ex.com/a.png").data == b"one"


def test_aliases_share_one_blob() -> None:
    table = ResourceTable()
    res = Resource(mime_type="text/css", url="http://ex.com/s.css", data=b"a{}")

    table.add(res, "/s.css", "http://ex.com/s.css", "cid:css-1")

    assert len(table) == 3
    assert table.resources() == [res]
    assert table.get("/s.css") is table.get("cid:css-1")
    assert table.lookup("missing", "http://ex.com/s.css") is res
    assert table.lookup("missing") is None


def test_seed_runs_once_on_first_access() -> None:
    calls = []
    res = Resource(url="http://ex.com/x.js", data=b"1")

    def seed():
        calls.append(1)
        yield res.url, res

    table = ResourceTable(seed=seed)
    assert calls == []
    assert "http://ex.com/x.js" in table
    assert table.get("http://ex.com/x.js") is res
    table.add(Resource(url="y"), "y")
    assert calls == [1]


def test_concurrent_adds_keep_a_single_winner() -> None:
    table = ResourceTable()
    barrier = threading.Barrier(8)
    candidates = [Resource(url="k", data=str(i).encode()) for i in range(8)]

    def worker(res: Resource) -> None:
        barrier.wait()
        table.add(res, "k")

    threads = [threading.Thread(target=worker, args=(c,)) for c in candidates]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(table) == 1
    assert len(table.resources()) == 1
    assert table.get("k") in candidates


def test_reset_data_refreshes_data_uri() -> None:
    table = ResourceTable()
    res = Resource(mime_type="text/css", url="http://ex.com/s.css", data=b"a{}", text_encoding="utf-8")
    table.add(res, res.url)

    assert res.data_uri() == "data:text/css;charset=utf-8;base64,YXt9"
    table.reset_data(res, b"")
    assert res.data_uri() == "data:text/css;charset=utf-8;base64,"


def test_data_uri_falls_back_to_extension_then_octet_stream() -> None:
    assert Resource(url="http://ex.com/pic.png", data=b"").data_uri() == "data:image/png;base64,"
    assert Resource(url="http://ex.com/blob", data=b"").data_uri() == "data:application/octet-stream;base64,"


def test_reference_forms() -> None:
    assert relative_ref("https://ex.com/a/b.png?x=1") == "/a/b.png?x=1"
    assert relative_ref("//cdn.ex.com/x.js") == "/x.js"
    assert relative_ref("img/a.png") == "img/a.png"

    assert absolute_ref("b.png", "http://ex.com/a") == "http://ex.com/b.png"
    assert absolute_ref("/img/a.png", "https://ex.com/dir/page") == "https://ex.com/img/a.png"
    assert absolute_ref("cid:part-1", "http://ex.com/") == "cid:part-1"
    assert absolute_ref("data:,x", "http://ex.com/") == "data:,x"

    assert complete_ref("//cdn.ex.com/x.js", "https://ex.com/") == "https://cdn.ex.com/x.js"
    assert complete_ref("img/a.png", "https://ex.com/dir/page") == "https://ex.com/img/a.png"
    assert complete_ref("http://other.com/a", "https://ex.com/") == "http://other.com/a"

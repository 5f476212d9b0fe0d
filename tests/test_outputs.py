from __future__ import annotations

from pathlib import Path

import pytest

from featspec_common.backend_client import BackendError
from featspec_pipeline.errors import OutputPersistenceError
from featspec_pipeline.outputs import (
    HttpOutputWriter,
    LocalOutputWriter,
    output_file_path,
)


def test_output_naming():
    assert output_file_path("./runs/p1/", "research") == "./runs/p1/research-output.md"


def test_local_writer(tmp_path: Path):
    writer = LocalOutputWriter(tmp_path)
    writer.save("runs/p1/research-output.md", "body")
    assert (tmp_path / "runs" / "p1" / "research-output.md").read_text(encoding="utf-8") == "body"
    assert not (tmp_path / "runs" / "p1" / "research-output.md.tmp").exists()


def test_local_writer_wraps_os_errors(tmp_path: Path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(OutputPersistenceError):
        LocalOutputWriter().save(str(blocker / "sub" / "out.md"), "body")


class DummyClient:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.saved = []

    def save_file(self, file_path, content):
        if self.fail:
            raise BackendError("Server error: 500 Internal Server Error")
        self.saved.append((file_path, content))


def test_http_writer():
    client = DummyClient()
    HttpOutputWriter(client).save("./a/research-output.md", "body")
    assert client.saved == [("./a/research-output.md", "body")]

    with pytest.raises(OutputPersistenceError, match="500"):
        HttpOutputWriter(DummyClient(fail=True)).save("./a/x.md", "body")

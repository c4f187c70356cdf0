"""元数据提取测试：验证 shebang、描述标记、文档字符串、标签与预览截断。"""

from __future__ import annotations

from pathlib import Path

from alec.domain.enums import ScriptType
from alec.infra.metadata.extractor import CommentMetadataExtractor, ParseConfig, truncate_description


def test_shell_header_comments_become_description(tmp_path: Path) -> None:
    script = tmp_path / "backup.sh"
    script.write_text(
        "#!/usr/bin/env bash\n# Back up the home directory\n# to the NAS share.\n\necho start\n# not part\n",
        encoding="utf-8",
    )
    meta = CommentMetadataExtractor().extract(str(script), ScriptType.shell)
    assert meta.interpreter == "/usr/bin/env bash"
    assert meta.description == "Back up the home directory to the NAS share."
    assert meta.line_count == 6
    assert meta.is_truncated is False


def test_description_marker_and_tags_take_priority(tmp_path: Path) -> None:
    script = tmp_path / "deploy.sh"
    script.write_text(
        "#!/bin/sh\n# helper text\n# Description: Deploy the web tier\n# Tags: Ops, deploy web\n",
        encoding="utf-8",
    )
    meta = CommentMetadataExtractor().extract(str(script), ScriptType.shell)
    assert meta.description == "Deploy the web tier"
    assert meta.tags == ("ops", "deploy", "web")


def test_python_docstring_first_paragraph(tmp_path: Path) -> None:
    script = tmp_path / "report.py"
    script.write_text(
        '#!/usr/bin/env python3\n"""Build the weekly report.\n\nLong details here.\n"""\nprint("x")\n',
        encoding="utf-8",
    )
    meta = CommentMetadataExtractor().extract(str(script), ScriptType.python)
    assert meta.description == "Build the weekly report."


def test_node_block_comment_description(tmp_path: Path) -> None:
    script = tmp_path / "sync.js"
    script.write_text("/**\n * @desc Sync buckets\n * @tags s3\n */\nconsole.log(1)\n", encoding="utf-8")
    meta = CommentMetadataExtractor().extract(str(script), ScriptType.node)
    assert meta.description == "Sync buckets"
    assert meta.tags == ("s3",)


def test_long_script_preview_is_truncated(tmp_path: Path) -> None:
    script = tmp_path / "long.sh"
    script.write_text("".join(f"echo {i}\n" for i in range(40)), encoding="utf-8")
    meta = CommentMetadataExtractor(ParseConfig(max_preview_lines=10, full_script_threshold=30)).extract(
        str(script), ScriptType.shell
    )
    assert meta.line_count == 40
    assert meta.preview_lines == 10
    assert meta.is_truncated is True
    assert meta.preview.splitlines()[-1] == "echo 9"


def test_truncate_description_cuts_at_word_boundary() -> None:
    assert truncate_description("short", 10) == "short"
    assert truncate_description("alpha beta gamma delta", 14) == "alpha beta..."

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from pathlib import Path

from archivist.config.profile import BackupProfile


class ScriptedPrompter:
    """Prompter that replays canned answers; an exhausted script cancels."""

    def __init__(
        self,
        *,
        choices: list[int | None] | None = None,
        answers: list[str | None] | None = None,
    ) -> None:
        self._choices = deque(choices or [])
        self._answers = deque(answers or [])
        self.titles: list[str] = []
        self.prompts: list[str] = []

    def choose(self, title: str, options: list[str]) -> int | None:
        self.titles.append(title)
        if not self._choices:
            return None
        return self._choices.popleft()

    def ask(self, prompt: str) -> str | None:
        self.prompts.append(prompt)
        if not self._answers:
            return None
        return self._answers.popleft()


FIXED_NOW = datetime(2026, 3, 1, 12, 30, 0, tzinfo=timezone.utc)


def write_file(path: Path, content: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def two_category_profile(tmp_path: Path) -> BackupProfile:
    """Category A holds a 10-byte file, category B a 0-byte file."""
    a_file = write_file(tmp_path / "source" / "A" / "a.txt", b"0123456789")
    b_file = write_file(tmp_path / "source" / "B" / "b.txt", b"")
    return BackupProfile(
        backup_type="Full",
        destination={"kind": "Local", "path": str(tmp_path / "backups")},
        categories=[
            {"name": "A", "paths": [str(a_file)]},
            {"name": "B", "paths": [str(b_file)]},
        ],
    )

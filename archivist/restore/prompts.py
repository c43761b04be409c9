from __future__ import annotations

from typing import Callable, Protocol


class Prompter(Protocol):
    """Interactive selection collaborator.

    Both methods return ``None`` when the user gives no answer; callers treat
    that uniformly as cancellation.
    """

    def choose(self, title: str, options: list[str]) -> int | None: ...

    def ask(self, prompt: str) -> str | None: ...


class ConsolePrompter:
    def __init__(
        self,
        *,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
    ) -> None:
        self._input = input_fn
        self._output = output_fn

    def choose(self, title: str, options: list[str]) -> int | None:
        if not options:
            return None
        self._output(title)
        for index, option in enumerate(options, start=1):
            self._output(f"  {index}. {option}")
        while True:
            answer = self.ask(f"Select 1-{len(options)} (empty to cancel): ")
            if answer is None:
                return None
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                return int(answer) - 1
            self._output(f"Invalid choice: {answer}")

    def ask(self, prompt: str) -> str | None:
        try:
            answer = self._input(prompt)
        except (EOFError, KeyboardInterrupt):
            return None
        answer = answer.strip()
        return answer or None

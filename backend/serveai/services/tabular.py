from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TabularLayout:
    """Column layout of one CLI invocation's fixed-format text output.

    ``delimiter=None`` splits on runs of whitespace; ``"\\t"`` splits on single
    tabs so that values containing spaces survive. ``header`` is the label of
    the first column; a leading line starting with it is dropped. ``greedy``
    names the one column allowed to contain spaces in whitespace mode: columns
    to its left are taken from the start of the line, columns to its right
    from the end.
    """

    columns: tuple[str, ...]
    delimiter: str | None = None
    header: str | None = None
    greedy: str | None = None

    def __post_init__(self) -> None:
        if not self.columns:
            raise ValueError("layout needs at least one column")
        if self.greedy is not None and self.greedy not in self.columns:
            raise ValueError(f"greedy column {self.greedy!r} is not part of the layout")

    def prefixed(self, column: str) -> TabularLayout:
        return TabularLayout(
            columns=(column, *self.columns),
            delimiter=self.delimiter,
            header=self.header,
            greedy=self.greedy,
        )

    def decode(self, text: str) -> list[dict[str, str]]:
        lines = [line for line in text.splitlines() if line.strip()]
        if self.header is not None and lines and lines[0].lstrip().startswith(self.header):
            lines = lines[1:]
        return [self.decode_line(line) for line in lines]

    def decode_line(self, line: str) -> dict[str, str]:
        if self.delimiter is None:
            fields = self._split_whitespace(line)
        else:
            fields = [field.strip() for field in line.split(self.delimiter)]
        row: dict[str, str] = {}
        for index, column in enumerate(self.columns):
            row[column] = fields[index] if index < len(fields) else ""
        return row

    def _split_whitespace(self, line: str) -> list[str]:
        tokens = line.split()
        if self.greedy is None or len(tokens) <= len(self.columns):
            return tokens

        greedy_index = self.columns.index(self.greedy)
        trailing = len(self.columns) - greedy_index - 1
        end = len(tokens) - trailing
        return [
            *tokens[:greedy_index],
            " ".join(tokens[greedy_index:end]),
            *tokens[end:],
        ]


def parse_int(value: str, default: int = 0) -> int:
    try:
        return int(value.strip())
    except (AttributeError, ValueError):
        return default


def parse_float(value: str, default: float = 0.0) -> float:
    try:
        return float(value.strip().rstrip("%"))
    except (AttributeError, ValueError):
        return default

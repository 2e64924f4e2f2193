"""Display formatting for the budget control CLI.

Provides:
- Money and percentage formatting
- Aligned plain-text tables for rollup rows
- Sectioned plain-text reports for KPI summaries
"""

from typing import Any, Dict, List, Optional


def format_amount(value: Optional[float], currency: str = "MXN",
                  precision: int = 2) -> str:
    """Format a money amount with thousands separators and a currency code.

    Negative amounts keep their sign so variances read naturally.

    Examples:
        format_amount(10000) -> "10,000.00 MXN"
        format_amount(-512.5, "USD") -> "-512.50 USD"
        format_amount(None) -> "-"
    """
    if value is None:
        return "-"
    text = f"{value:,.{precision}f}"
    return f"{text} {currency}" if currency else text


def format_percent(value: Optional[float], precision: int = 1,
                   fraction: bool = True) -> str:
    """Format a percentage for display.

    Args:
        value: Percentage, as a fraction (0.05) when *fraction* is True,
            otherwise already on a 0-100 scale
        precision: Decimal places (default: 1)

    Examples:
        format_percent(0.01) -> "1.0%"
        format_percent(62.5, fraction=False) -> "62.5%"
        format_percent(None) -> "-"
    """
    if value is None:
        return "-"
    scaled = value * 100 if fraction else value
    return f"{scaled:.{precision}f}%"


def format_quantity(value: Optional[float], unit: str = "") -> str:
    """Format a quantity, dropping trailing zeros ("52.5 PZA", "50 PZA")."""
    if value is None:
        return "-"
    text = f"{value:,.4f}".rstrip("0").rstrip(".")
    return f"{text} {unit}".strip()


class TableFormatter:
    """Formats rows as aligned plain-text columns."""

    def __init__(self, columns: List[str], column_widths: Optional[List[int]] = None):
        self.columns = columns
        self.column_widths = column_widths or [len(col) for col in columns]
        self.rows: List[List[str]] = []

    def add_row(self, values: List[Any]) -> None:
        """Add a row to the table.

        Raises:
            ValueError: If value count doesn't match column count
        """
        if len(values) != len(self.columns):
            raise ValueError(f"Expected {len(self.columns)} values, got {len(values)}")

        str_values = []
        for i, val in enumerate(values):
            str_val = str(val) if val is not None else "-"
            str_values.append(str_val)
            if len(str_val) > self.column_widths[i]:
                self.column_widths[i] = len(str_val)
        self.rows.append(str_values)

    @staticmethod
    def _looks_numeric(val: str) -> bool:
        head = val.split(" ")[0].replace(",", "").rstrip("%")
        try:
            float(head)
        except ValueError:
            return False
        return True

    def _format_row(self, values: List[str], is_header: bool = False) -> str:
        cells = []
        for i, val in enumerate(values):
            width = self.column_widths[i]
            if not is_header and self._looks_numeric(val):
                cells.append(val.rjust(width))
            else:
                cells.append(val.ljust(width))
        return "  ".join(cells).rstrip()

    def to_string(self, show_header: bool = True) -> str:
        """Render header, separator and rows as one string."""
        lines = []
        if show_header:
            lines.append(self._format_row(self.columns, is_header=True))
            lines.append("  ".join("-" * w for w in self.column_widths))
        for row in self.rows:
            lines.append(self._format_row(row))
        return "\n".join(lines)

    def print_table(self, show_header: bool = True) -> None:
        print(self.to_string(show_header))


class ReportFormatter:
    """Formats a titled report made of headed sections."""

    def __init__(self, title: str = ""):
        self.title = title
        self.sections: List[Dict[str, Any]] = []

    def add_section(self, heading: str, content: Any) -> None:
        """Add a section; *content* may be a string, list, dict or table."""
        self.sections.append({"heading": heading, "content": content})

    @staticmethod
    def _format_content(content: Any) -> List[str]:
        if isinstance(content, TableFormatter):
            return content.to_string().splitlines()
        if isinstance(content, str):
            return [content]
        if isinstance(content, (list, tuple)):
            return [f"  - {item}" for item in content] or ["  (none)"]
        if isinstance(content, dict):
            width = max((len(str(k)) for k in content), default=0)
            return [f"  {str(k).ljust(width)}  {v}" for k, v in content.items()]
        return [str(content)]

    def to_string(self) -> str:
        lines = []
        if self.title:
            lines.append(self.title)
            lines.append("=" * len(self.title))
            lines.append("")
        for section in self.sections:
            lines.append(section["heading"])
            lines.append("-" * len(section["heading"]))
            lines.extend(self._format_content(section["content"]))
            lines.append("")
        return "\n".join(lines)

    def print_report(self) -> None:
        print(self.to_string())

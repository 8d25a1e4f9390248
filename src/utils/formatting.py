from __future__ import annotations

from decimal import Decimal


def format_decimal(value: Decimal | None) -> str:
    if value is None:
        return "-"
    quantized = value.normalize()
    # Avoid scientific notation for integers.
    if quantized == quantized.to_integral():
        return f"{quantized:.0f}"
    return format(quantized, "f")


def format_currency(value: Decimal | None) -> str:
    if value is None:
        return "unpriced"
    cents = value.quantize(Decimal("0.01"))
    return f"{cents:.2f}"


def render_table(headers: list[str], rows: list[list[str]], *, numeric_from: int = 1) -> str:
    """Plain-text table; columns from ``numeric_from`` on are right-aligned."""
    widths = [max(len(header), max((len(row[idx]) for row in rows), default=0)) for idx, header in enumerate(headers)]

    def fmt(cells: list[str]) -> str:
        return " ".join(
            f"{cell:>{widths[idx]}}" if idx >= numeric_from else f"{cell:<{widths[idx]}}"
            for idx, cell in enumerate(cells)
        )

    header = fmt(headers)
    lines = [header, "-" * len(header)]
    lines.extend(fmt(row) for row in rows)
    lines.append("-" * len(header))
    return "\n".join(lines)

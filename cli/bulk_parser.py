#!/usr/bin/env python3
"""
Parser for bulk queue input.

One product per line: product_id starting_bid [duration_seconds],
separated by commas, tabs or spaces. Blank lines and lines starting
with # are ignored.
"""
import re
from decimal import Decimal, InvalidOperation
from typing import List, Tuple, Optional

SEPARATORS = re.compile(r'[,\t ]+')

ParsedLine = Tuple[int, Optional[str], Optional[Decimal], Optional[int], str, Optional[str]]


def parse_amount(text: str) -> Optional[Decimal]:
    """Parse a price such as 12, 12.50 or $1,250.00. None if it is not a positive amount."""
    try:
        amount = Decimal(text.replace("$", "").replace(",", ""))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


def _split(line: str) -> List[str]:
    # Commas inside a $-prefixed price ("$1,250") would otherwise split the amount
    if "$" in line:
        line = re.sub(r'\$([\d,]+(?:\.\d+)?)', lambda m: m.group(1).replace(",", ""), line)
    return [part for part in SEPARATORS.split(line) if part]


def parse_bulk_input(lines: List[str]) -> List[ParsedLine]:
    """
    Parse bulk input lines.

    Args:
        lines: List of input lines (from stdin)

    Returns:
        List of tuples: (row_number, product_id, starting_bid, duration_seconds, original_line, error)
        Row numbers are 1-indexed. error is None for a usable line; duplicates
        keep their product_id but carry an error so the first occurrence wins.
    """
    results = []
    seen_products = set()

    for line_num, line in enumerate(lines, start=1):
        original_line = line.rstrip("\n")
        line = line.strip()

        if not line or line.startswith('#'):
            continue

        parts = _split(line)
        product_id = parts[0]

        if product_id in seen_products:
            results.append((line_num, product_id, None, None, original_line, "Duplicate product in input"))
            continue

        if len(parts) < 2 or len(parts) > 3:
            results.append((line_num, product_id, None, None, original_line, "Expected: product_id starting_bid [duration]"))
            continue

        starting_bid = parse_amount(parts[1])
        if starting_bid is None:
            results.append((line_num, product_id, None, None, original_line, f"Invalid starting bid: {parts[1]}"))
            continue

        duration = None
        if len(parts) == 3:
            if not parts[2].isdigit() or int(parts[2]) <= 0:
                results.append((line_num, product_id, starting_bid, None, original_line, f"Invalid duration: {parts[2]}"))
                continue
            duration = int(parts[2])

        seen_products.add(product_id)
        results.append((line_num, product_id, starting_bid, duration, original_line, None))

    return results

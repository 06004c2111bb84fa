"""
Product -> creditable units mapping.

Priority (first match wins):
1. Product id containing "_<N>_presentation(s)"   e.g. slide_ai_business_10_presentations
2. Title containing "<N> presentation(s)"         e.g. "Access 50 AI-powered presentations"
3. Description, same pattern
4. Legacy table of pre-convention product ids
5. Zero
"""

import re
from collections.abc import Mapping, Sequence

from slidegen.config import LEGACY_CREDIT_TABLE
from slidegen.models.entitlement import Package, Product

_PRODUCT_ID_PATTERN = re.compile(r"_(\d+)_presentations?", re.IGNORECASE)
# Up to three qualifying words may sit between the count and the noun; a
# duration word means the number is a period ("1 month unlimited presentations")
_TEXT_PATTERN = re.compile(
    r"(\d+)\s*(?:(?!-?(?:days?|weeks?|months?|years?)\b)[\w-]+\s+){0,3}?presentations?\b",
    re.IGNORECASE,
)


def extract_presentation_count(
    product_id: str | None,
    title: str | None = None,
    description: str | None = None,
) -> int:
    """Units encoded in product metadata, 0 if none."""
    if product_id:
        match = _PRODUCT_ID_PATTERN.search(product_id)
        if match:
            return int(match.group(1))

    for text in (title, description):
        if text:
            match = _TEXT_PATTERN.search(text)
            if match:
                return int(match.group(1))

    return 0


def creditable_units(
    product: Product,
    legacy_table: Mapping[str, int] | None = None,
) -> int:
    """
    Units to credit for a purchased product.

    Args:
        product: Purchased product (identifier, title, description)
        legacy_table: Fallback for product ids predating the naming convention
    """
    units = extract_presentation_count(product.identifier, product.title, product.description)
    if units > 0:
        return units

    table = LEGACY_CREDIT_TABLE if legacy_table is None else legacy_table
    return max(0, int(table.get(product.identifier, 0)))


def find_package(
    packages: Sequence[Package],
    identifier: str,
    mapping: Mapping[str, str] | None = None,
) -> Package | None:
    """
    Resolve a package from a plan, package or product identifier.

    Tries the configured mapping, then an exact package id, then an exact
    product id, then a substring match in either direction.
    """
    if not identifier:
        return None

    mapped = (mapping or {}).get(identifier)
    if mapped:
        for package in packages:
            if package.identifier == mapped:
                return package

    for package in packages:
        if package.identifier == identifier:
            return package

    for package in packages:
        if package.product.identifier == identifier:
            return package

    for package in packages:
        if (
            identifier in package.identifier
            or package.identifier in identifier
            or identifier in package.product.identifier
            or package.product.identifier in identifier
        ):
            return package

    return None

# -*- coding: utf-8 -*-
"""
Normalizers

Canonical forms for free-text make/model strings.
Every matching layer compares normalized values only, so both datasets are
run through these functions exactly once per run.
"""

import re
from typing import Optional, Union


# =============================================================================
# TEXT NORMALIZATION
# =============================================================================

_DISALLOWED_CHARS = re.compile(r'[^a-z0-9\s-]')
_WHITESPACE = re.compile(r'\s+')


def normalize_text(text: Optional[Union[str, int, float]]) -> str:
    """
    Lower-case, drop everything outside [a-z0-9 whitespace -], collapse spaces.

    Args:
        text: Raw make/model value (numbers are stringified)

    Returns:
        Normalized string, or empty string for missing input
    """
    if text is None:
        return ''

    text_lower = str(text).lower()
    text_clean = _DISALLOWED_CHARS.sub('', text_lower)
    return _WHITESPACE.sub(' ', text_clean).strip()


# =============================================================================
# BASE MODEL EXTRACTION
# =============================================================================

# Trim / drivetrain / transmission / body / engine / edition tokens (normalized form).
# Matched as whole words, i.e. delimited by whitespace or the string ends.
TRIM_KEYWORDS = [
    # Trim levels
    'lariat', 'xle', 'se', 'le', 'limited', 'ltd', 'xlt', 'xl', 'slt', 'sle',
    'gt', 'gls', 'glx', 'sport', 'sports', 'premium', 'plus', 'platinum', 'sr5',
    'trd', 'pro', 'touring', 'ex', 'lx', 'si', 'dx', 'sx', 'ex-l', 'sel', 'sl',
    'sv', 'st', 'rs', 'base', 'basic', 'value', 'classic', 'custom', 'luxury',
    'titanium', 'denali', 'nismo', 'amg', 'm-sport', 's-line', 'type-r', 'type-s',
    'laredo', 'summit', 'overland', 'rubicon', 'sahara', 'altitude', 'latitude',
    'trail hawk', 'trailhawk',
    # Body styles
    'sedan', 'coupe', 'hatchback', 'wagon', 'convertible', 'suv', 'truck', 'van',
    'minivan', 'pick up', 'pickup', 'pick-up', 'double cab', 'single cab',
    'crew cab', 'quad cab', 'king cab', 'long bed', 'short bed',
    '4dr', '2dr', '5dr', '3dr', '4d', '2d', '5d', '3d', 'sdn', 'cpe', 'hb', 'conv',
    # Engines
    'v6', 'v8', 'v10', 'v12', 'i4', 'i6', 'l4', 'l6', '4-cyl', '6-cyl', '8-cyl',
    '20t', '25t', '15t', '35l', '50l', '15l', '20l', '30l',
    'hybrid', 'phev', 'ev', 'electric', 'ecoboost', 'tdi', 'diesel', 'turbo',
    # Drivetrain
    'awd', '4wd', 'fwd', 'rwd', '4x4', '4x2', 'off-road', 'off road', 'z71', 'fx4',
    # Transmission
    'automatic', 'manual', 'auto', 'man', 'cvt', 'at', 'mt',
    # Editions
    'black edition', 'special edition', 'launch edition', 'limited edition',
]

# Longest first so multi-word keywords win over their single-word parts
_TRIM_PATTERN = re.compile(
    r'(?<!\S)(?:' +
    '|'.join(re.escape(kw) for kw in sorted(TRIM_KEYWORDS, key=len, reverse=True)) +
    r')(?!\S)'
)

# Trailing engine-size / trim numerics: "is 300 f" -> "is", "a4 20t" -> "a4"
_TRAILING_NUMERIC = re.compile(r'\s\d.*$')


def _strip_once(text: str) -> str:
    stripped = _TRIM_PATTERN.sub(' ', text)
    stripped = _WHITESPACE.sub(' ', stripped).strip()
    stripped = _TRAILING_NUMERIC.sub('', stripped)
    return _WHITESPACE.sub(' ', stripped).strip()


def extract_base_model(text: Optional[Union[str, int, float]]) -> str:
    """
    Derive the model family name by removing trim keywords and trailing numerics.

    Examples:
        "Camry XLE V6"   -> "camry"
        "IS 300 F"       -> "is"
        "Patrol Pick Up" -> "patrol"

    Removing a keyword can bring two words together that form another
    keyword, so stripping repeats until nothing changes.

    Args:
        text: Raw or normalized model string

    Returns:
        Normalized base model (may be empty)
    """
    current = normalize_text(text)
    while True:
        stripped = _strip_once(current)
        # Every pass that changes the text shortens it
        if stripped == current:
            return current
        current = stripped

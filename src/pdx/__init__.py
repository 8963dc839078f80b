"""
PDX (Portable DNA eXchange) interchange format.

Components:
- Envelope models and privacy modes
- Version-specific decoders (current and one prior major)
- Signed encoding and all-or-nothing decoding
"""

from .codec import PDXCodec, apply_privacy_mode, decode, seal_document
from .schema import ExportToolInfo, PDXPayload, PrivacyMode
from .versions import CURRENT_FORMAT_VERSION, LEGACY_FORMAT_VERSION, get_decoder

__all__ = [
    "PDXCodec",
    "apply_privacy_mode",
    "decode",
    "seal_document",
    "ExportToolInfo",
    "PDXPayload",
    "PrivacyMode",
    "CURRENT_FORMAT_VERSION",
    "LEGACY_FORMAT_VERSION",
    "get_decoder",
]

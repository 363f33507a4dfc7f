"""
Content fingerprinting for change signaling.

The fingerprint is taken over the raw fetched content (or the raw manual JSON
text), never over the extracted contacts, so any textual change to the source
page is surfaced to the operator even when the extraction comes out the same.
"""

import hashlib
from typing import Optional, Union

FINGERPRINT_LENGTH = 16


class ChangeDetector:
    """Computes short content fingerprints and compares them."""

    def __init__(self, length: int = FINGERPRINT_LENGTH):
        self.length = length

    def fingerprint(self, content: Union[str, bytes]) -> str:
        """SHA-256 hex digest of the content, truncated for storage."""
        if isinstance(content, str):
            content = content.encode('utf-8')
        return hashlib.sha256(content).hexdigest()[:self.length]

    @staticmethod
    def changed(previous_hash: Optional[str], new_hash: str) -> bool:
        """True when there is no previous fingerprint or it differs from the new one."""
        return not previous_hash or previous_hash != new_hash

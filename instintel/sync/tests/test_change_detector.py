#!/usr/bin/env python3
"""
Unit tests for content fingerprinting and change detection.
"""

import pytest

from ..change_detector import ChangeDetector, FINGERPRINT_LENGTH


class TestChangeDetector:
    """Test fingerprint stability and change signaling."""

    @pytest.fixture
    def detector(self):
        return ChangeDetector()

    def test_fingerprint_is_deterministic(self, detector):
        """Identical content always produces the same fingerprint."""
        html = "<html><body><p>Director: 011-2345678</p></body></html>"
        assert detector.fingerprint(html) == detector.fingerprint(html)
        assert detector.fingerprint(html) == detector.fingerprint(html.encode('utf-8'))

    def test_single_character_change_changes_fingerprint(self, detector):
        """A one character edit produces a different fingerprint."""
        assert detector.fingerprint("phone 011-2345678") != detector.fingerprint("phone 011-2345679")

    def test_fingerprint_is_short_hex(self, detector):
        """Fingerprints are truncated SHA-256 hex digests."""
        fingerprint = detector.fingerprint("anything")
        assert len(fingerprint) == FINGERPRINT_LENGTH
        int(fingerprint, 16)

    def test_unchanged_when_hash_matches(self, detector):
        h1 = detector.fingerprint("same content")
        assert detector.changed(h1, detector.fingerprint("same content")) is False

    def test_changed_when_hash_differs(self, detector):
        h1 = detector.fingerprint("old content")
        h2 = detector.fingerprint("new content")
        assert detector.changed(h1, h2) is True

    def test_changed_when_no_previous_hash(self, detector):
        """Never-synced institutions always report a change."""
        assert detector.changed(None, detector.fingerprint("content")) is True
        assert detector.changed("", detector.fingerprint("content")) is True

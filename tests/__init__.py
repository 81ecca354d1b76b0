"""Test suite for NepseWatch.

Hermetic tests: Playwright is mocked, clocks are injected and every file
lands under tmp_path.
"""

"""
Tests for log sanitization of credentials and PII.
"""

import unittest

from shared.log_sanitizer import sanitize_for_log, sanitize_exception_for_db


class TestSanitizeForLog(unittest.TestCase):

    def test_masks_tenantsync_api_key(self):
        key = 'ts_live_' + 'ab' * 24
        result = sanitize_for_log(f"Rejected key {key}")
        self.assertNotIn('ab' * 24, result)
        self.assertIn('ts_live_[REDACTED]', result)

    def test_masks_email(self):
        self.assertEqual(sanitize_for_log("Failed for user@example.com"), "Failed for [EMAIL]")

    def test_masks_bearer_token(self):
        result = sanitize_for_log("Header was Bearer abc.def.ghi")
        self.assertIn('Bearer [REDACTED]', result)
        self.assertNotIn('abc.def.ghi', result)

    def test_masks_stripe_secret(self):
        result = sanitize_for_log("Invalid API Key provided: sk_test_51Habcdef")
        self.assertNotIn('51Habcdef', result)

    def test_masks_card_number(self):
        result = sanitize_for_log("card 4242 4242 4242 4242 declined")
        self.assertIn('[CARD]', result)
        self.assertNotIn('4242 4242', result)

    def test_line_breaks_cannot_forge_entries(self):
        result = sanitize_for_log("bad\nINFO forged entry\r\x1b[2J")
        self.assertNotIn('\n', result)
        self.assertNotIn('\r', result)
        self.assertNotIn('\x1b', result)
        self.assertTrue(result.startswith('bad INFO forged entry'))

    def test_truncates_long_payloads(self):
        result = sanitize_for_log('x' * 1000)
        self.assertTrue(result.endswith('... [truncated]'))
        self.assertLess(len(result), 250)

    def test_accepts_exceptions(self):
        self.assertEqual(sanitize_for_log(ValueError("boom")), "boom")


class TestSanitizeExceptionForDb(unittest.TestCase):

    def test_includes_type_and_masked_message(self):
        result = sanitize_exception_for_db(ValueError("Bad email bob@example.com"))
        self.assertEqual(result, "ValueError: Bad email [EMAIL]")


if __name__ == '__main__':
    unittest.main()

import unittest

from agent_broker.services.host_policy import (
    HostPolicyMatcher,
    matches,
    matches_pattern,
    normalize_host,
    validate_host_pattern,
)


class TestHostMatching(unittest.TestCase):
    def test_wildcard_subdomain_excludes_apex(self):
        self.assertTrue(matches("api.example.com", ["*.example.com"]))
        self.assertFalse(matches("example.com", ["*.example.com"]))
        self.assertTrue(matches("deep.api.example.com", ["*.example.com"]))

    def test_star_matches_anything(self):
        self.assertTrue(matches("x.com", ["*"]))

    def test_exact_match(self):
        self.assertTrue(matches("a.b.com", ["a.b.com"]))
        self.assertFalse(matches("b.com", ["a.b.com"]))
        self.assertFalse(matches("evila.b.com", ["a.b.com"]))

    def test_suffix_without_dot_boundary_does_not_match(self):
        self.assertFalse(matches("evilexample.com", ["*.example.com"]))

    def test_case_and_trailing_dot_are_ignored(self):
        self.assertTrue(matches("API.Example.COM.", ["*.example.com"]))
        self.assertTrue(matches_pattern("graph.facebook.com", "Graph.Facebook.com."))
        self.assertEqual(normalize_host(" Host.Example. "), "host.example")

    def test_empty_inputs_never_match(self):
        self.assertFalse(matches("", ["*"]))
        self.assertFalse(matches("a.com", []))
        self.assertFalse(matches("a.com", None))

    def test_matcher_class_delegates(self):
        self.assertTrue(HostPolicyMatcher().matches("api.github.com", ["api.github.com", "uploads.github.com"]))


class TestHostPatternValidation(unittest.TestCase):
    def test_valid_patterns(self):
        for pattern in ("*", "*.example.com", "graph.facebook.com", "localhost"):
            self.assertEqual(validate_host_pattern(pattern), [], pattern)

    def test_invalid_patterns(self):
        self.assertTrue(validate_host_pattern(""))
        self.assertTrue(validate_host_pattern("api.*.example.com"))
        self.assertTrue(validate_host_pattern("https://example.com"))
        self.assertTrue(validate_host_pattern("example.com:443"))
        self.assertTrue(validate_host_pattern("-bad.example.com"))

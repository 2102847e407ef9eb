import json
import unittest

from agent_broker.services.secret_interpolation import (
    LOCATION_BODY,
    LOCATION_HEADER,
    LOCATION_QUERY,
    SecretInterpolationEngine,
    location_label,
)


class TestSecretInterpolation(unittest.TestCase):
    def setUp(self):
        self.engine = SecretInterpolationEngine()

    def test_header_substitution_tracks_location(self):
        result = self.engine.interpolate(
            alias="svc",
            secret="s3cr3t",
            headers={"Authorization": "Bearer {svc}", "Accept": "application/json"},
            query=[("page", "1")],
        )
        self.assertEqual(result.headers["Authorization"], "Bearer s3cr3t")
        self.assertTrue(result.secret_in_header)
        self.assertFalse(result.secret_in_query)
        self.assertFalse(result.secret_in_body)
        self.assertTrue(result.used_anywhere)
        self.assertIsNone(result.body)

    def test_json_body_is_interpolated_per_value(self):
        result = self.engine.interpolate(
            alias="svc",
            secret='a"b',
            headers={},
            query=[],
            body_json={"auth": {"token": "{svc}"}, "items": ["{svc}", 3]},
        )
        decoded = json.loads(result.body)
        self.assertEqual(decoded["auth"]["token"], 'a"b')
        self.assertEqual(decoded["items"], ['a"b', 3])
        self.assertTrue(result.secret_in_body)

    def test_other_alias_placeholder_is_left_alone(self):
        result = self.engine.interpolate(
            alias="svc",
            secret="x",
            headers={"X-Key": "{other}"},
            query=[("k", "{svc_extra}")],
            body_text="plain",
        )
        self.assertEqual(result.headers["X-Key"], "{other}")
        self.assertEqual(result.query, [("k", "{svc_extra}")])
        self.assertEqual(result.body, "plain")
        self.assertFalse(result.used_anywhere)

    def test_check_locations_reports_in_fixed_order(self):
        result = self.engine.interpolate(
            alias="svc",
            secret="x",
            headers={"X-Key": "{svc}"},
            query=[("key", "{svc}")],
            body_text="token={svc}",
        )
        violations = self.engine.check_locations(
            result, allowed_in_header=False, allowed_in_query=False, allowed_in_body=False
        )
        self.assertEqual(violations, [LOCATION_HEADER, LOCATION_QUERY, LOCATION_BODY])
        self.assertEqual(
            self.engine.check_locations(result, allowed_in_header=True, allowed_in_query=True, allowed_in_body=True),
            [],
        )

    def test_location_labels(self):
        self.assertEqual(location_label(LOCATION_QUERY), "query parameters")
        self.assertEqual(location_label(LOCATION_HEADER), "headers")
        self.assertEqual(location_label(LOCATION_BODY), "request body")

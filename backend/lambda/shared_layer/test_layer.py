"""test_layer.py — Unit tests for repeat_shared layer modules.

Run from shared_layer directory:
    python3 -m pytest test_layer.py -v
"""

from __future__ import annotations

import base64
import http.client
import json
import os
import sys
import threading
import time
import unittest
from unittest.mock import MagicMock, patch

# Ensure the layer's python/ directory is importable.
sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

import jwt
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

import repeat_shared.auth as auth_mod
import repeat_shared.aws_clients as clients
from repeat_shared.auth import _authenticate, _extract_token, _verify_token
from repeat_shared.http_utils import _error, _http_method, _json_body, _preflight, _response
from repeat_shared.serialization import _deserialize, _iso_ms, _now_iso_ms, _parse_iso8601, _serialize

DOMAIN = "tenant.example.com"
AUDIENCE = "https://api.repeat-videos.com"
KID = "test-kid"

_SIGNING_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
_OTHER_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _jwks(*pairs):
    keys = []
    for kid, private_key in pairs:
        jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
        jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
        keys.append(jwk)
    return {"keys": keys}


def _token(key=_SIGNING_KEY, kid=KID, **overrides):
    claims = {
        "sub": "auth0|user-1",
        "aud": AUDIENCE,
        "iss": f"https://{DOMAIN}/",
        "iat": int(time.time()),
        "exp": int(time.time()) + 600,
    }
    claims.update(overrides)
    claims = {k: v for k, v in claims.items() if v is not None}
    return jwt.encode(claims, key, algorithm="RS256", headers={"kid": kid})


class _AuthTestCase(unittest.TestCase):
    def setUp(self):
        for name, value in (
            ("AUTH0_DOMAIN", DOMAIN),
            ("AUTH0_AUDIENCE", AUDIENCE),
            ("_jwks_cache", None),
        ):
            patcher = patch.object(auth_mod, name, value)
            patcher.start()
            self.addCleanup(patcher.stop)
        fetch = patch.object(auth_mod, "_fetch_jwks_document", return_value=_jwks((KID, _SIGNING_KEY)))
        self.mock_fetch = fetch.start()
        self.addCleanup(fetch.stop)


class ExtractTokenTests(unittest.TestCase):
    def test_extract_bearer_token(self):
        event = {"headers": {"authorization": "Bearer abc.def.ghi"}}
        self.assertEqual(_extract_token(event), "abc.def.ghi")

    def test_header_name_is_case_insensitive(self):
        event = {"headers": {"Authorization": "Bearer xyz"}}
        self.assertEqual(_extract_token(event), "xyz")

    def test_missing_or_wrong_scheme(self):
        for headers in ({}, {"authorization": "Basic abc"}, {"authorization": "bearer abc"},
                        {"authorization": "Bearer "}, None):
            with self.subTest(headers=headers):
                self.assertIsNone(_extract_token({"headers": headers}))


class VerifyTokenTests(_AuthTestCase):
    def test_valid_token_returns_subject(self):
        self.assertEqual(_verify_token(_token()), "auth0|user-1")
        self.mock_fetch.assert_called_once()

    def test_jwks_is_fetched_once_per_process(self):
        for _ in range(3):
            _verify_token(_token())
        self.assertEqual(self.mock_fetch.call_count, 1)

    def test_concurrent_first_use_fetches_once(self):
        barrier = threading.Barrier(4)
        results = []

        def _worker():
            barrier.wait()
            results.append(_verify_token(_token()))

        threads = [threading.Thread(target=_worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(results, ["auth0|user-1"] * 4)
        self.assertEqual(self.mock_fetch.call_count, 1)

    def test_failed_fetch_is_not_cached(self):
        self.mock_fetch.side_effect = [OSError("connection refused"), _jwks((KID, _SIGNING_KEY))]
        with self.assertRaises(ValueError):
            _verify_token(_token())
        self.assertEqual(_verify_token(_token()), "auth0|user-1")

    def test_rejections(self):
        cases = {
            "expired": _token(exp=int(time.time()) - 60),
            "wrong audience": _token(aud="https://other.example.com"),
            "wrong issuer": _token(iss="https://evil.example.com/"),
            "unknown kid": _token(kid="rotated-away"),
            "bad signature": _token(key=_OTHER_KEY),
            "missing subject": _token(sub=None),
            "hs256": jwt.encode({"sub": "x"}, "shared-secret", algorithm="HS256"),
            "garbage": "not-a-jwt",
        }
        for label, token in cases.items():
            with self.subTest(case=label):
                with self.assertRaises(ValueError):
                    _verify_token(token)

    def test_truncated_jwks_response_is_rejected(self):
        self.mock_fetch.side_effect = http.client.IncompleteRead(b"")
        with self.assertRaises(ValueError):
            _verify_token(_token())
        self.assertIsNone(auth_mod._jwks_cache)

    def test_malformed_jwks_documents_are_rejected(self):
        for document in ([{"kid": KID}], {"keys": "nope"}, "text", None):
            with self.subTest(document=document):
                self.mock_fetch.return_value = document
                with self.assertRaises(ValueError):
                    _verify_token(_token())

    def test_non_object_keys_are_skipped(self):
        document = _jwks((KID, _SIGNING_KEY))
        document["keys"].insert(0, "junk")
        document["keys"].insert(0, {"kid": "ec-key", "kty": "EC"})
        self.mock_fetch.return_value = document
        self.assertEqual(_verify_token(_token()), "auth0|user-1")

    def test_unconfigured_domain_fails_closed(self):
        with patch.object(auth_mod, "AUTH0_DOMAIN", ""):
            with self.assertRaises(ValueError):
                _verify_token(_token())
        self.mock_fetch.assert_not_called()


class AuthenticateTests(_AuthTestCase):
    def test_authenticate_success(self):
        event = {"headers": {"authorization": f"Bearer {_token()}"}}
        subject, err = _authenticate(event)
        self.assertEqual(subject, "auth0|user-1")
        self.assertIsNone(err)

    def test_authenticate_no_token(self):
        subject, err = _authenticate({"headers": {}})
        self.assertIsNone(subject)
        self.assertEqual(err["statusCode"], 401)
        self.assertEqual(json.loads(err["body"]), {"error": "Unauthorized"})

    def test_authenticate_hides_failure_reason(self):
        event = {"headers": {"authorization": f"Bearer {_token(aud='nope')}"}}
        with self.assertLogs(auth_mod.logger, level="WARNING") as logs:
            subject, err = _authenticate(event)
        self.assertIsNone(subject)
        self.assertEqual(json.loads(err["body"]), {"error": "Unauthorized"})
        self.assertIn("audience", "\n".join(logs.output))


class HttpUtilsTests(unittest.TestCase):
    def test_response_format(self):
        resp = _response(200, [{"key": "val"}])
        self.assertEqual(resp["statusCode"], 200)
        self.assertEqual(resp["headers"]["Content-Type"], "application/json")
        self.assertEqual(resp["headers"]["Access-Control-Allow-Origin"], "*")
        self.assertEqual(resp["headers"]["Access-Control-Allow-Headers"], "Authorization, Content-Type")
        self.assertEqual(json.loads(resp["body"]), [{"key": "val"}])

    def test_error_format(self):
        resp = _error(400, "No update fields")
        self.assertEqual(resp["statusCode"], 400)
        self.assertEqual(json.loads(resp["body"]), {"error": "No update fields"})

    def test_preflight_has_no_body_or_content_type(self):
        resp = _preflight()
        self.assertEqual(resp["statusCode"], 204)
        self.assertEqual(resp["body"], "")
        self.assertNotIn("Content-Type", resp["headers"])
        self.assertEqual(resp["headers"]["Access-Control-Allow-Methods"], "GET, POST, PATCH, DELETE, OPTIONS")

    def test_json_body(self):
        self.assertEqual(_json_body({"body": '{"key": "val"}'}), {"key": "val"})
        self.assertEqual(_json_body({}), {})
        self.assertEqual(_json_body({"body": ""}), {})

    def test_json_body_base64(self):
        raw = base64.b64encode(b'{"key": "b64"}').decode()
        self.assertEqual(_json_body({"body": raw, "isBase64Encoded": True}), {"key": "b64"})

    def test_json_body_rejects_non_objects(self):
        for raw in ("{broken", "[1, 2]", '"text"'):
            with self.subTest(raw=raw):
                with self.assertRaises(ValueError):
                    _json_body({"body": raw})

    def test_json_body_rejects_non_finite_constants(self):
        for raw in ('{"loopA": NaN}', '{"loopA": Infinity}', '{"loopA": -Infinity}'):
            with self.subTest(raw=raw):
                with self.assertRaises(ValueError):
                    _json_body({"body": raw})

    def test_http_method(self):
        self.assertEqual(_http_method({"requestContext": {"http": {"method": "patch"}}}), "PATCH")
        self.assertEqual(_http_method({"httpMethod": "DELETE"}), "DELETE")
        self.assertEqual(_http_method({}), "")


class SerializationTests(unittest.TestCase):
    def test_serialize_values(self):
        self.assertEqual(_serialize("hello"), {"S": "hello"})
        self.assertEqual(_serialize(3.14), {"N": "3.14"})
        self.assertEqual(_serialize(None), {"NULL": True})

    def test_deserialize_numbers(self):
        item = {"loops": {"N": "3"}, "loopA": {"N": "1.25"}, "loopB": {"NULL": True}}
        self.assertEqual(_deserialize(item), {"loops": 3, "loopA": 1.25, "loopB": None})
        self.assertIsInstance(_deserialize(item)["loops"], int)

    def test_iso_timestamps(self):
        parsed = _parse_iso8601("2024-03-01T10:00:00.123456Z")
        self.assertEqual(_iso_ms(parsed), "2024-03-01T10:00:00.123Z")
        self.assertIsNone(_parse_iso8601("not a date"))
        self.assertEqual(_iso_ms(_parse_iso8601("2024-03-01T10:00:00.5Z")), "2024-03-01T10:00:00.500Z")
        self.assertEqual(_iso_ms(_parse_iso8601("2024-03-01T10:00:00.12Z")), "2024-03-01T10:00:00.120Z")
        self.assertEqual(_iso_ms(_parse_iso8601("2024-03-01T10:00:00.1234+02:00")), "2024-03-01T08:00:00.123Z")
        self.assertEqual(_iso_ms(_parse_iso8601("2024-03-01T10:00:00.123456789Z")), "2024-03-01T10:00:00.123Z")
        self.assertTrue(_now_iso_ms().endswith("Z"))


class AwsClientTests(unittest.TestCase):
    def setUp(self):
        patcher = patch.object(clients, "_ddb", None)
        patcher.start()
        self.addCleanup(patcher.stop)

    @patch.object(clients.boto3, "client")
    def test_ddb_singleton(self, mock_client):
        mock_client.return_value = MagicMock()
        c1 = clients._get_ddb()
        c2 = clients._get_ddb()
        self.assertIs(c1, c2)
        mock_client.assert_called_once()
        args, kwargs = mock_client.call_args
        self.assertEqual(args, ("dynamodb",))
        self.assertEqual(kwargs["config"].connect_timeout, clients.DYNAMODB_CONNECT_TIMEOUT_SECONDS)
        self.assertEqual(kwargs["config"].retries["max_attempts"], 1)
        self.assertNotIn("endpoint_url", kwargs)

    @patch.object(clients.boto3, "client")
    def test_endpoint_url_override(self, mock_client):
        with patch.object(clients, "DYNAMODB_ENDPOINT_URL", "http://localhost:8000"):
            clients._get_ddb()
        self.assertEqual(mock_client.call_args.kwargs["endpoint_url"], "http://localhost:8000")

    @patch.object(clients.boto3, "client", side_effect=ValueError("bad region"))
    def test_creation_failure_propagates_and_is_not_cached(self, _mock_client):
        with self.assertRaises(ValueError):
            clients._get_ddb()
        self.assertIsNone(clients._ddb)


if __name__ == "__main__":
    unittest.main()

"""repeat_shared — Shared utilities for repeat-videos Lambda functions.

Provides:
    - Bearer-token JWT authentication against the identity provider JWKS
    - DynamoDB client singleton
    - HTTP response helpers with CORS
    - DynamoDB serialization/deserialization
"""

__version__ = "1.0.0"

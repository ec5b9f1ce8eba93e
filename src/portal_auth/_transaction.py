"""Cookie codec for the in-flight authorization transaction.

The transaction lives only in the browser: an httpOnly, same-site cookie
holding unpadded base64url JSON. The state it carries is echoed back by the
identity provider, and the verifier is checked by the provider against the
challenge it saw, so tampering with the cookie cannot produce a session.
"""

import binascii
import json

from cross_web import Cookie
from pydantic import ValidationError

from ._config import SessionConfig
from .exceptions import MalformedTransaction
from .models.authorization_transaction import AuthorizationTransaction
from .utils._b64 import b64url_decode, b64url_encode
from .utils._pkce import calculate_s256_challenge, generate_code_verifier

__all__ = [
    "create_challenge",
    "create_verifier",
    "decode_transaction",
    "encode_transaction",
    "make_clear_transaction_cookie",
    "make_transaction_cookie",
]


def encode_transaction(transaction: AuthorizationTransaction) -> str:
    payload = transaction.model_dump_json(by_alias=True)

    return b64url_encode(payload.encode("utf-8"))


def decode_transaction(token: str) -> AuthorizationTransaction:
    try:
        payload = b64url_decode(token)
    except (binascii.Error, ValueError) as e:
        raise MalformedTransaction("Transaction cookie is not valid base64") from e

    try:
        return AuthorizationTransaction.model_validate_json(payload)
    except ValidationError as e:
        raise MalformedTransaction("Transaction cookie payload is invalid") from e


def create_verifier() -> str:
    return generate_code_verifier()


def create_challenge(verifier: str) -> str:
    return calculate_s256_challenge(verifier)


def make_transaction_cookie(
    transaction: AuthorizationTransaction, config: SessionConfig
) -> Cookie:
    return Cookie(
        name=config["transaction_cookie_name"],
        value=encode_transaction(transaction),
        secure=config["cookie_secure"],
        path=config["cookie_path"],
        max_age=config["transaction_max_age"],
        httponly=True,
        samesite=config["cookie_samesite"],
    )


def make_clear_transaction_cookie(config: SessionConfig) -> Cookie:
    return Cookie(
        name=config["transaction_cookie_name"],
        value="",
        secure=config["cookie_secure"],
        path=config["cookie_path"],
        max_age=0,
        httponly=True,
        samesite=config["cookie_samesite"],
    )

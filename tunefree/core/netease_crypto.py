"""
Netease WeAPI request encryption.

The web endpoints under ``music.163.com/weapi/`` only accept form bodies of
``params`` (two AES-CBC rounds) and ``encSecKey`` (textbook RSA of the
random second key). This is the publicly known bypass used by the Netease
lyric fallback.
"""

import base64
import json
import secrets
import string

from Crypto.Cipher import AES
from Crypto.Util.Padding import pad

MODULUS = (
    '00e0b509f6259df8642dbc35662901477df22677ec152b5ff68ace615bb7b725152b3ab17a876aea8a5aa76d2e417629ec4ee341f56135fccf695280104e0312ecbda92557c93870114af6c9d05c4f7f0c3685b7a46bee255932575cce10b424d813cfe4875d3e82047b97ddef52741d546b8e289dc6935b3ece0462db0a22b8e7'
)
NONCE = b'0CoJUm6Qyw8W8jud'
PUBKEY = '010001'
IV = b'0102030405060708'

SECRET_ALPHABET = string.digits + string.ascii_letters


def aes_encrypt(text: bytes, key: bytes, iv: bytes = IV) -> bytes:
    cipher = AES.new(key, AES.MODE_CBC, iv)
    return base64.b64encode(cipher.encrypt(pad(text, 16)))


def rsa_encrypt(text: bytes, pubkey: str = PUBKEY, modulus: str = MODULUS) -> str:
    """Unpadded RSA over the reversed secret, hex encoded and left-padded to 256."""
    value = int(text[::-1].hex(), 16)
    encrypted = pow(value, int(pubkey, 16), int(modulus, 16))
    return f'{encrypted:x}'.zfill(256)


def create_secret_key(size: int = 16) -> bytes:
    return ''.join(secrets.choice(SECRET_ALPHABET) for _ in range(size)).encode('utf-8')


def encrypt_weapi(data: dict, secret: bytes = None) -> dict:
    """
    Encrypt a request dict for Netease WeAPI.
    Returns the form fields ``params`` and ``encSecKey``.
    """
    secret = secret or create_secret_key()
    text = json.dumps(data, separators=(',', ':')).encode('utf-8')

    params = aes_encrypt(aes_encrypt(text, NONCE), secret)

    return {
        'params': params.decode('utf-8'),
        'encSecKey': rsa_encrypt(secret),
    }

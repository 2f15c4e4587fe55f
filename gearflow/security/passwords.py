from pwdlib import PasswordHash
from pwdlib.exceptions import UnknownHashError

from gearflow.errors import ValidationError


MIN_PASSWORD_LENGTH = 8

password_hash = PasswordHash.recommended()


def check_password_policy(raw_password: str | None) -> str:
    if len(raw_password or '') < MIN_PASSWORD_LENGTH:
        raise ValidationError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters')
    return raw_password


def hash_password(raw_password: str) -> str:
    return password_hash.hash(check_password_policy(raw_password))


def verify_password(raw_password: str, hashed_password: str | None) -> bool:
    if not raw_password or not hashed_password:
        return False
    try:
        return password_hash.verify(raw_password, hashed_password)
    except UnknownHashError:
        # Accounts imported from the hosted auth provider carry foreign hashes.
        return False

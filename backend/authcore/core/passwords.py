from functools import lru_cache

import bcrypt

# bcrypt only looks at the first 72 bytes; bcrypt>=5 refuses anything longer.
MAX_PASSWORD_BYTES = 72


def check_password_length(password: str) -> str:
    """Reject passwords bcrypt cannot hash. Used by request schemas."""
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return password


def hash_password(password: str, rounds: int = 12) -> str:
    check_password_length(password)
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    # Older bcrypt releases truncate silently; never let a longer password match a prefix.
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # malformed stored hash, or a password bcrypt refuses
        return False


@lru_cache()
def _dummy_hash(rounds: int) -> str:
    return hash_password("not-a-real-password", rounds)


def burn_password_check(password: str, rounds: int = 12) -> None:
    """Spend one bcrypt check when the email is unknown, so both login failures cost the same."""
    verify_password(password, _dummy_hash(rounds))

from __future__ import annotations

import random
import string

ALPHABET = string.ascii_letters + string.digits

GENDERS: tuple[str, ...] = ("Male", "Female", "Other")


def random_string(length: int, rng: random.Random | None = None) -> str:
    chooser = rng or random
    return "".join(chooser.choice(ALPHABET) for _ in range(length))


def generate_record(user_id: str, rng: random.Random | None = None) -> dict[str, str]:
    """Random user row for the stress table, keyed by ``user_id``."""
    chooser = rng or random
    return {
        "user_id": user_id,
        "name": f"User {random_string(5, chooser)}",
        "email": f"{random_string(8, chooser)}@example.com",
        "gender": chooser.choice(GENDERS),
        "amount": f"{chooser.random() * 1000:.2f}",
        "wallet_address": f"0x{random_string(40, chooser)}",
    }


__all__ = ["GENDERS", "generate_record", "random_string"]

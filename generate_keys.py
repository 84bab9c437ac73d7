"""
Generate the secrets the integration service reads from .env

    python generate_keys.py          # SECRET_KEY, Fernet key, admin token
    python generate_keys.py --rsa    # also an RS256 pair for widget tokens
"""
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives import serialization
import os
import secrets
import sys


def generate_env_secrets() -> dict:
    return {
        "SECRET_KEY": secrets.token_urlsafe(48),
        "INTEGRATION_ENCRYPTION_KEY": Fernet.generate_key().decode("utf-8"),
        "INTEGRATION_ADMIN_TOKEN": secrets.token_urlsafe(32),
    }


def generate_rsa_keys(private_key_path: str = "private_key.pem", public_key_path: str = "public_key.pem"):
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=4096)

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

    with open(private_key_path, "wb") as f:
        f.write(private_pem)
    with open(public_key_path, "wb") as f:
        f.write(public_pem)

    # Unix only
    if hasattr(os, "chmod"):
        os.chmod(private_key_path, 0o600)

    print(f" Private key saved to: {private_key_path}")
    print(f" Public key saved to: {public_key_path}")
    print()
    print(" Set JWT_ALGORITHM=RS256 and paste both PEM blocks into JWT_PRIVATE_KEY / JWT_PUBLIC_KEY.")


if __name__ == "__main__":
    print()
    print("=" * 50)
    print("  Integration Secret Generator")
    print("=" * 50)
    print()

    for name, value in generate_env_secrets().items():
        print(f"{name}={value}")

    print()
    print("  IMPORTANT:")
    print("   - Rotating INTEGRATION_ENCRYPTION_KEY: move the old value to")
    print("     INTEGRATION_ENCRYPTION_KEY_PREVIOUS so stored webhook secrets still decrypt")
    print("   - Never commit these values to version control")

    if "--rsa" in sys.argv[1:]:
        print()
        if os.path.exists("private_key.pem") or os.path.exists("public_key.pem"):
            response = input("Key files already exist. Overwrite them? (yes/no): ").lower()
            if response not in ["yes", "y"]:
                print(" Aborted. Existing keys preserved.")
                sys.exit(0)
        generate_rsa_keys()

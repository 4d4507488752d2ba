"""Input validation utilities.

Provides validation for:
- Target addresses (IPv4 syntax)
- Ports
- Linux usernames
- Swap sizes and timezones
- Site names
- Password generation

All validators return the validated value or raise ValidationError.
"""

import re
import secrets
import string

from fvps.core.exceptions import ValidationError


# Four dot-separated groups of 1-3 digits. Syntax only, no range check.
IPV4_PATTERN = re.compile(r"^[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}$")

# useradd's default NAME_REGEX
USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]*\$?$")
MAX_USERNAME_LENGTH = 32

# fallocate-style sizes as printed by `swapon --show`
SWAP_SIZE_PATTERN = re.compile(r"^[1-9][0-9]*[KMGT]$")

TIMEZONE_PATTERN = re.compile(r"^(UTC|[A-Za-z_]+(/[A-Za-z0-9_+\-]+){1,2})$")

SITE_NAME_PATTERN = re.compile(
    r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$"
)


def validate_ip_address(value: str) -> str:
    """Validate the target address.

    This is a syntax check only: four dot-separated groups of one to
    three digits. It does not check ranges or reachability.

    Args:
        value: Address to validate

    Returns:
        The validated address

    Raises:
        ValidationError: If the address is empty or malformed
    """
    value = (value or "").strip()

    if not value:
        raise ValidationError(
            "Server IP address is mandatory",
            hint="Set server.ip_address in config.yml",
        )

    if not IPV4_PATTERN.match(value):
        raise ValidationError(
            f"Invalid IP address format: {value}",
            hint="Provide a valid IPv4 address in config.yml",
        )

    return value


def validate_port(value: int) -> int:
    """Validate a port number.

    Args:
        value: Port number to validate

    Returns:
        The validated port number

    Raises:
        ValidationError: If port is out of valid range
    """
    if not 1 <= value <= 65535:
        raise ValidationError(
            f"Invalid port number: {value}",
            hint="Port must be between 1 and 65535",
        )
    return value


def validate_username(value: str, field_name: str = "username") -> str:
    """Validate a Linux account name."""
    if not value:
        raise ValidationError(
            f"{field_name} cannot be empty",
            hint="Provide a valid Linux username",
        )

    if len(value) > MAX_USERNAME_LENGTH:
        raise ValidationError(
            f"{field_name} exceeds maximum length ({len(value)} > {MAX_USERNAME_LENGTH})",
        )

    if not USERNAME_PATTERN.match(value):
        raise ValidationError(
            f"Invalid {field_name}: '{value}'",
            hint="Use lowercase letters, digits, '-' and '_', starting with a letter or '_'",
        )

    return value


def validate_swap_size(value: str) -> str:
    """Validate a swap size such as "2G" or "512M".

    The value is normalised to upper case so it compares equal to the
    SIZE column of `swapon --show`.
    """
    normalised = str(value).strip().upper()
    if not SWAP_SIZE_PATTERN.match(normalised):
        raise ValidationError(
            f"Invalid swap size: {value}",
            hint="Use a whole number with a unit suffix, e.g. 2G or 512M",
        )
    return normalised


def validate_timezone(value: str) -> str:
    """Validate the shape of an IANA timezone name (e.g. Asia/Kolkata)."""
    value = str(value).strip()
    if not TIMEZONE_PATTERN.match(value):
        raise ValidationError(
            f"Invalid timezone: {value}",
            hint="Use an IANA name such as UTC or Europe/Berlin",
        )
    return value


def validate_site_name(value: str) -> str:
    """Validate a Frappe site name (a DNS-style host name)."""
    value = value.strip()
    if value and not SITE_NAME_PATTERN.match(value):
        raise ValidationError(
            f"Invalid site name: {value}",
            hint="Use a host name like erp.example.com",
        )
    return value


# Alphanumeric only: generated values end up in SQL, JSON and shell-free
# stdin documents, and must survive all of them unescaped.
DEFAULT_PASSWORD_LENGTH = 48
PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    """Generate a cryptographically secure password.

    Args:
        length: Password length (minimum 16, default 48)

    Returns:
        Generated password

    Raises:
        ValidationError: If length is too short
    """
    if length < 16:
        raise ValidationError(
            "Password length must be at least 16 characters",
            hint="Use a longer password for security",
        )

    # Ensure at least one of each class
    password_chars = [
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.digits),
    ]
    password_chars.extend(
        secrets.choice(PASSWORD_ALPHABET) for _ in range(length - len(password_chars))
    )

    # SystemRandom shuffle so the fixed classes are not always first
    secrets.SystemRandom().shuffle(password_chars)
    return "".join(password_chars)

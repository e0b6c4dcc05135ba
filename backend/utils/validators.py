import re

IFSC_REGEX = re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$")
ACCOUNT_NUMBER_REGEX = re.compile(r"^\d{9,18}$")


def normalize_ifsc(ifsc: str) -> str:
    ifsc = (ifsc or "").strip().upper()

    if not IFSC_REGEX.match(ifsc):
        raise ValueError("Invalid IFSC code format")

    return ifsc


def normalize_account_number(account_number: str) -> str:
    account_number = (account_number or "").replace(" ", "").strip()

    if not ACCOUNT_NUMBER_REGEX.match(account_number):
        raise ValueError("Account number must be 9 to 18 digits")

    return account_number


def mask_account_number(account_number: str) -> str:
    return "X" * max(len(account_number) - 4, 0) + account_number[-4:]

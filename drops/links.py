"""
Link Codec - shareable drop links

Shareable link (query string):
    key=<capability_secret>&amount=<yocto>&from=<issuer_account>&limited=<true|false>

A shared reference exists only when key, amount and from are all present;
anything less decodes to None, which is the normal "no incoming drop" state.

Redemption-portal link (display/copy only):
    <wallet_url>/create/<contract_name>/<capability_secret>
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit


@dataclass(frozen=True)
class SharedDropReference:
    """Parsed from an incoming link. Lives in memory for one session, never stored."""
    key: str
    amount: int
    from_account: str
    limited: bool = False

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "amount": self.amount,
            "from": self.from_account,
            "limited": self.limited,
        }


def encode(drop, issuer_account: str) -> str:
    """Query string for a drop (the secret is the capability)."""
    return urlencode({
        "key": drop.secret_key,
        "amount": str(drop.amount),
        "from": issuer_account,
        "limited": "true" if drop.limited else "false",
    })


def decode(link: Optional[str]) -> Optional[SharedDropReference]:
    """
    Parse a query string, "?query", or full URL into a SharedDropReference.
    Returns None if key/amount/from is missing or amount is not an integer.
    """
    if not link:
        return None
    query = link.strip()
    if "://" in query:
        query = urlsplit(query).query
    elif "?" in query:
        query = query.split("?", 1)[1]

    params = parse_qs(query, keep_blank_values=False)
    key = params.get("key", [""])[0]
    amount = params.get("amount", [""])[0]
    from_account = params.get("from", [""])[0]
    if not (key and amount and from_account):
        return None

    try:
        amount_int = int(amount)
    except ValueError:
        return None
    if amount_int < 0:
        return None

    return SharedDropReference(
        key=key,
        amount=amount_int,
        from_account=from_account,
        limited=params.get("limited", ["false"])[0] == "true",
    )


def wallet_link(wallet_url: str, contract_name: str, secret_key: str) -> str:
    """Link that lets the wallet create an account straight from the drop key."""
    return f"{wallet_url.rstrip('/')}/create/{contract_name}/{secret_key}"


def share_link(app_url: str, drop, issuer_account: str) -> str:
    """Link back into this app with the drop embedded in the query."""
    return f"{app_url.rstrip('/')}/?{encode(drop, issuer_account)}"

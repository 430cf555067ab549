"""
OAuth redirect handling.

Deriv returns to the application with one `acctN` / `tokenN` / `curN`
triple per account the user granted access to, e.g.::

    https://app.example/callback?acct1=CR799393&token1=a1-f7p...&cur1=usd&acct2=VRTC1859315&token2=a1clwe3...&cur2=usd
"""

import re
from typing import List, Optional
from urllib.parse import parse_qs, urlsplit

from common.logger import get_logger

from .models import Account
from .token_store import TokenStore

logger = get_logger("deriv_gateway.oauth")

_ACCT_PARAM = re.compile(r"^acct(\d+)$")


def parse_oauth_redirect(url: str) -> List[Account]:
    """
    Extract the accounts carried by an OAuth redirect URL.

    Query string and fragment are both searched; incomplete triples
    (an account without a token) are skipped. Accounts are returned in
    index order.
    """
    parts = urlsplit(url.strip())
    params = {}
    for component in (parts.query, parts.fragment):
        for key, values in parse_qs(component).items():
            params.setdefault(key, values[0])
    if not params and "=" in url and "?" not in url and "#" not in url:
        params = {k: v[0] for k, v in parse_qs(url.strip()).items()}

    indexed = sorted(
        (int(match.group(1)), key)
        for key, match in ((k, _ACCT_PARAM.match(k)) for k in params)
        if match
    )

    accounts = []
    for index, key in indexed:
        token = params.get(f"token{index}")
        if not token:
            logger.warning(f"OAuth redirect lists {params[key]} without a token, skipping")
            continue
        loginid = params[key]
        accounts.append(Account(
            loginid=loginid,
            token=token,
            currency=(params.get(f"cur{index}") or "").upper(),
            is_virtual=loginid.upper().startswith("VR"),
        ))
    return accounts


class OAuthImport:
    """Stores the accounts of an OAuth redirect in a token store."""

    def __init__(self, token_store: TokenStore):
        self.token_store = token_store

    def import_redirect(self, url: str, activate: Optional[str] = None) -> List[Account]:
        """
        Persist every account of the redirect.

        The first account (or `activate`, when given and present) becomes
        the active account.

        Returns:
            The imported accounts
        """
        accounts = parse_oauth_redirect(url)
        if not accounts:
            logger.warning("OAuth redirect carried no accounts")
            return []

        for account in accounts:
            self.token_store.set(account.loginid, account.token)
            self.token_store.map_token(account.loginid, account.token)
        self.token_store.save_user_accounts(accounts)

        active = accounts[0]
        if activate:
            active = next((a for a in accounts if a.normalized_id == activate.lower()), active)
        self.token_store.set_active_account(active.loginid)
        self.token_store.set_last_token(active.token)
        logger.info(f"Imported {len(accounts)} account(s) from OAuth redirect, active {active.loginid}")
        return accounts

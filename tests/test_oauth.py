from deriv_gateway.oauth import OAuthImport, parse_oauth_redirect
from deriv_gateway.token_store import TokenStore

REDIRECT = (
    "https://app.example/callback?acct1=CR799393&token1=a1-f7pnteezo4jzhpxclctizt27hfjtx"
    "&cur1=usd&acct2=VRTC1859315&token2=a1clwe3vfuuus5kraceykdsoqm4snfq&cur2=usd"
)


def test_parse_redirect_query():
    accounts = parse_oauth_redirect(REDIRECT)
    assert [a.loginid for a in accounts] == ["CR799393", "VRTC1859315"]
    assert accounts[0].token == "a1-f7pnteezo4jzhpxclctizt27hfjtx"
    assert accounts[0].currency == "USD"
    assert not accounts[0].is_virtual
    assert accounts[1].is_virtual


def test_parse_redirect_fragment_and_index_order():
    url = "https://app.example/#acct10=CR10&token10=t10&acct2=CR2&token2=t2&cur2=eur"
    accounts = parse_oauth_redirect(url)
    assert [a.loginid for a in accounts] == ["CR2", "CR10"]
    assert accounts[0].currency == "EUR"
    assert accounts[1].currency == ""


def test_parse_bare_query_string():
    accounts = parse_oauth_redirect("acct1=CR1&token1=tok1&cur1=usd")
    assert len(accounts) == 1 and accounts[0].loginid == "CR1"


def test_parse_skips_accounts_without_token():
    accounts = parse_oauth_redirect("https://x/?acct1=CR1&acct2=CR2&token2=tok2")
    assert [a.loginid for a in accounts] == ["CR2"]


def test_parse_without_accounts():
    assert parse_oauth_redirect("https://app.example/callback?state=1") == []


def test_import_persists_accounts_and_activates_first():
    store = TokenStore()
    imported = OAuthImport(store).import_redirect(REDIRECT)

    assert len(imported) == 2
    assert store.get("CR799393") == "a1-f7pnteezo4jzhpxclctizt27hfjtx"
    assert store.account_tokens()["vrtc1859315"] == "a1clwe3vfuuus5kraceykdsoqm4snfq"
    assert [a.loginid for a in store.user_accounts()] == ["CR799393", "VRTC1859315"]
    assert store.get_active_account() == "cr799393"
    assert store.get_last_token() == "a1-f7pnteezo4jzhpxclctizt27hfjtx"


def test_import_activates_requested_account():
    store = TokenStore()
    OAuthImport(store).import_redirect(REDIRECT, activate="vrtc1859315")
    assert store.get_active_account() == "vrtc1859315"
    assert store.get_last_token() == "a1clwe3vfuuus5kraceykdsoqm4snfq"


def test_import_of_empty_redirect_changes_nothing():
    store = TokenStore()
    assert OAuthImport(store).import_redirect("https://app.example/callback") == []
    assert store.store.keys() == []

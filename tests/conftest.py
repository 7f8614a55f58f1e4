import pytest


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep key files, ledgers and the audit log out of the real home dir."""
    home = tmp_path / "tollgate-home"
    monkeypatch.setenv("TOLLGATE_HOME", str(home))
    monkeypatch.delenv("TOLLGATE_AUDIT_HMAC_KEY", raising=False)
    for name in (
        "TOLLGATE_NETWORK",
        "TOLLGATE_TOKEN_NAME",
        "TOLLGATE_TOKEN_VERSION",
        "TOLLGATE_CLOCK_SKEW_SECONDS",
        "TOLLGATE_MAX_VALIDITY_SECONDS",
        "TOLLGATE_HTTP_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    return home

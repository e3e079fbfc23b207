"""Tests for state_store module."""

from unittest import mock

import pytest

from quickvm_setup.errors import ValidationError
from quickvm_setup.host_shell import LocalShell
from quickvm_setup.state_store import StateStore, merge_env, merge_env_text, parse_env, render_env


@pytest.fixture
def local_store(tmp_path):
    """State store on a real file under tmp_path."""
    return StateStore(LocalShell(), path=str(tmp_path / "quickvm" / "state.env"), owner=None)


def test_parse_env_skips_comments_and_blanks():
    text = "# managed\n\nMAC=00:50:56:aa:bb:cc\nnot a pair\nAPI_KEY = abc=def \n"
    assert parse_env(text) == {"MAC": "00:50:56:aa:bb:cc", "API_KEY": "abc=def"}


def test_parse_env_last_duplicate_wins():
    record = parse_env("PORT=8071\nMAC=00:50:56:aa:bb:cc\nPORT=9000\n")
    assert record["PORT"] == "9000"
    assert list(record) == ["MAC", "PORT"]


def test_merge_env_keeps_order_and_deletes_none():
    existing = parse_env("FOO=1\nMAC=old\nBAR=2\n")

    merged = merge_env(existing, {"MAC": "new", "PORT": "8071", "BAR": None})

    assert list(merged.items()) == [("FOO", "1"), ("MAC", "new"), ("PORT", "8071")]


def test_merge_env_text_keeps_comments_in_place():
    text = "# reserved in dhcpd, do not change\nMAC=00:50:56:aa:bb:cc\n\nVLAN=20\nPORT=8071\nPORT=9000\n"

    merged = merge_env_text(text, {"PORT": "9100", "VLAN": None, "API_KEY": "abc"})

    assert merged == "# reserved in dhcpd, do not change\nMAC=00:50:56:aa:bb:cc\n\nPORT=9100\nAPI_KEY=abc\n"


def test_render_env():
    assert render_env({"A": "1", "B": "two"}) == "A=1\nB=two\n"


class TestStateStore:
    """Tests for StateStore class."""

    def test_missing_file_is_empty_state(self, local_store):
        state = local_store.load()
        assert state.mac_address is None
        assert state.api_key is None
        assert state.interfaces == ()

    def test_update_then_load(self, local_store):
        local_store.update(
            mac_address="00:50:56:aa:bb:cc",
            api_key="k" * 48,
            port=8071,
            vlan_id=20,
            interfaces=["vmbr0", "tailscale0"],
        )

        state = local_store.load()

        assert state.mac_address == "00:50:56:aa:bb:cc"
        assert state.api_key == "k" * 48
        assert state.port == 8071
        assert state.vlan_id == 20
        assert state.interfaces == ("vmbr0", "tailscale0")

    def test_file_is_private(self, local_store, tmp_path):
        local_store.update(mac_address="00:50:56:aa:bb:cc")
        mode = (tmp_path / "quickvm" / "state.env").stat().st_mode & 0o777
        assert mode == 0o600

    def test_operator_keys_survive_update(self, local_store, tmp_path):
        path = tmp_path / "quickvm" / "state.env"
        path.parent.mkdir(parents=True)
        path.write_text("# notes\nOWNER=ops-team\nMAC=00:50:56:aa:bb:cc\nCUSTOM=1\n")

        local_store.update(api_key="secret", port=8071)

        assert path.read_text() == (
            "# notes\nOWNER=ops-team\nMAC=00:50:56:aa:bb:cc\nCUSTOM=1\nAPI_KEY=secret\nPORT=8071\n"
        )
        assert local_store.load().extra == {"OWNER": "ops-team", "CUSTOM": "1"}

    def test_existing_mac_kept_verbatim(self, local_store):
        local_store.update(mac_address="00:50:56:AA:BB:CC")
        assert local_store.load().mac_address == "00:50:56:AA:BB:CC"

    def test_rejects_invalid_mac(self, local_store):
        with pytest.raises(ValidationError, match="invalid MAC"):
            local_store.update(mac_address="00:50:56:zz:bb:cc")

    def test_malformed_mac_on_disk_is_ignored(self, local_store, tmp_path):
        path = tmp_path / "quickvm" / "state.env"
        path.parent.mkdir(parents=True)
        path.write_text("MAC=0050.56aa.bbcc\n")

        state = local_store.load()

        assert state.mac_address == "0050.56aa.bbcc"
        assert state.valid_mac is None

    def test_forget_removes_keys(self, local_store, tmp_path):
        path = tmp_path / "quickvm" / "state.env"
        path.parent.mkdir(parents=True)
        path.write_text("MAC=00:50:56:aa:bb:cc\nVLAN=20\nINTERFACES=tailscale0\n")

        state = local_store.update(port=8071, forget=["VLAN", "INTERFACES"])

        assert path.read_text() == "MAC=00:50:56:aa:bb:cc\nPORT=8071\n"
        assert state.vlan_id is None
        assert state.interfaces == ()

    def test_unchanged_update_does_not_rewrite(self, local_store):
        local_store.update(mac_address="00:50:56:aa:bb:cc", port=8071)

        with mock.patch.object(local_store.shell, "write_file") as mock_write:
            local_store.update(mac_address="00:50:56:aa:bb:cc", port=8071)

        mock_write.assert_not_called()

    def test_owner_passed_to_shell(self, fake_shell):
        store = StateStore(fake_shell, path="/etc/quickvm/state.env")

        with mock.patch.object(fake_shell, "write_file", wraps=fake_shell.write_file) as mock_write:
            store.update(mac_address="00:50:56:aa:bb:cc")

        assert mock_write.call_args.kwargs["owner"] == (100000, 100000)
        assert mock_write.call_args.kwargs["mode"] == 0o600

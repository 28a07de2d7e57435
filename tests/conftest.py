"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

FAKE_EASYRSA = """\
#!/bin/sh
# Minimal EasyRSA stand-in: records its arguments and fakes the PKI layout.
echo "$*" >> "$FAKE_EASYRSA_LOG"
pki=""
verb=""
name=""
for arg in "$@"; do
  case "$arg" in
    --pki-dir=*) pki="${arg#--pki-dir=}" ;;
    --*) ;;
    *) if [ -z "$verb" ]; then verb="$arg"; else name="$arg"; fi ;;
  esac
done
if [ -n "${FAKE_EASYRSA_FAIL:-}" ] && [ "$verb" = "$FAKE_EASYRSA_FAIL" ]; then
  echo "simulated $verb failure" >&2
  exit 1
fi
case "$verb" in
  build-client-full)
    echo "cert $name" > "$pki/issued/$name.crt"
    echo "key $name" > "$pki/private/$name.key"
    ;;
  revoke)
    rm -f "$pki/issued/$name.crt" "$pki/private/$name.key"
    ;;
  show-expire)
    if [ -n "${FAKE_EASYRSA_REPORT:-}" ]; then cat "$FAKE_EASYRSA_REPORT"; fi
    ;;
esac
exit 0
"""


def make_pki(
    root: Path,
    *,
    certs: Iterable[str] = (),
    keys: Iterable[str] = (),
) -> Path:
    """Create an EasyRSA-like PKI layout with placeholder credential files."""
    issued = root / "issued"
    private = root / "private"
    issued.mkdir(parents=True, exist_ok=True)
    private.mkdir(parents=True, exist_ok=True)
    for name in certs:
        (issued / f"{name}.crt").write_text(f"certificate of {name}\n", encoding="utf-8")
    for name in keys:
        (private / f"{name}.key").write_text(f"key of {name}\n", encoding="utf-8")
    return root


def write_certificate(
    path: Path,
    common_name: str,
    *,
    not_after: datetime | None = None,
) -> x509.Certificate:
    """Write a self-signed PEM certificate for *common_name* to *path*."""
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=60))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    return cert


@dataclass
class FakeEasyRSA:
    """Handle on the fake EasyRSA executable installed for a test."""

    binary: Path
    log: Path

    def calls(self) -> list[list[str]]:
        """Return the positional arguments (verb first) of every invocation."""
        if not self.log.exists():
            return []
        return [
            [token for token in line.split() if not token.startswith("--")]
            for line in self.log.read_text(encoding="utf-8").splitlines()
        ]

    def verbs(self) -> list[str]:
        """Return the verbs invoked, in order."""
        return [call[0] for call in self.calls() if call]


@pytest.fixture
def pki(tmp_path: Path) -> Path:
    """PKI with users alice and bob plus the CA key."""
    return make_pki(tmp_path / "pki", certs=("alice", "bob"), keys=("alice", "bob", "ca"))


@pytest.fixture
def skeleton(tmp_path: Path) -> Path:
    """Skeleton directory holding a single client config."""
    skel = tmp_path / "skel"
    skel.mkdir()
    (skel / "client.ovpn").write_text("remote vpn.example.com 1194\n", encoding="utf-8")
    return skel


@pytest.fixture
def fake_easyrsa(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeEasyRSA:
    """Install the fake EasyRSA script and point its log into *tmp_path*."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)
    binary = bin_dir / "easyrsa"
    binary.write_text(FAKE_EASYRSA, encoding="utf-8")
    binary.chmod(0o755)
    log = tmp_path / "easyrsa.log"
    monkeypatch.setenv("FAKE_EASYRSA_LOG", str(log))
    monkeypatch.delenv("FAKE_EASYRSA_FAIL", raising=False)
    monkeypatch.delenv("FAKE_EASYRSA_REPORT", raising=False)
    return FakeEasyRSA(binary=binary, log=log)

import hashlib
import shutil
import subprocess
from pathlib import Path

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from pgbackup.errors import ConfigurationError, EncryptionError
from pgbackup.pipeline import encrypt as encrypt_module
from pgbackup.pipeline.encrypt import maybe_encrypt

PLAINTEXT = b"fake tar.gz content\n" * 1000


def _openssl_decrypt(data: bytes, passphrase: str) -> bytes:
    assert data[:8] == b"Salted__"
    salt = data[8:16]
    material = hashlib.pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt, 10000, 48)
    decryptor = Cipher(algorithms.AES(material[:32]), modes.CBC(material[32:])).decryptor()
    padded = decryptor.update(data[16:]) + decryptor.finalize()
    unpadder = padding.PKCS7(128).unpadder()
    return unpadder.update(padded) + unpadder.finalize()


@pytest.fixture
def archive(tmp_path):
    path = tmp_path / "bica-backup-2024-05-01_0300.tar.gz"
    path.write_bytes(PLAINTEXT)
    return path


def test_disabled_returns_archive_unchanged(archive, logger):
    assert maybe_encrypt(archive, False, "", logger) == archive
    assert archive.read_bytes() == PLAINTEXT


def test_enabled_without_passphrase_is_configuration_error(archive, logger):
    with pytest.raises(ConfigurationError):
        maybe_encrypt(archive, True, "", logger)
    assert archive.exists()


def test_encrypts_and_removes_plaintext(archive, logger):
    final = maybe_encrypt(archive, True, "s3cret", logger)

    assert final.name == "bica-backup-2024-05-01_0300.tar.gz.enc"
    assert not archive.exists()
    assert _openssl_decrypt(final.read_bytes(), "s3cret") == PLAINTEXT
    assert sorted(p.name for p in final.parent.iterdir()) == [final.name]


def test_each_run_uses_a_fresh_salt(tmp_path, logger):
    outputs = []
    for name in ("a.tar.gz", "b.tar.gz"):
        path = tmp_path / name
        path.write_bytes(PLAINTEXT)
        outputs.append(maybe_encrypt(path, True, "s3cret", logger).read_bytes())

    assert outputs[0][8:16] != outputs[1][8:16]
    assert outputs[0] != outputs[1]


@pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl requis")
def test_openssl_cli_can_decrypt(archive, logger, tmp_path):
    final = maybe_encrypt(archive, True, "s3cret", logger)
    restored = tmp_path / "restored.tar.gz"

    subprocess.run(
        ["openssl", "enc", "-d", "-aes-256-cbc", "-pbkdf2", "-in", str(final), "-out", str(restored), "-k", "s3cret"],
        check=True,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    assert restored.read_bytes() == PLAINTEXT


def test_failure_keeps_plaintext_and_no_partial(archive, logger, monkeypatch):
    def broken_encrypt(source, destination, passphrase):
        destination.write_bytes(b"Salted__partial")
        raise OSError("No space left on device")

    monkeypatch.setattr(encrypt_module, "encrypt_file", broken_encrypt)

    with pytest.raises(EncryptionError) as excinfo:
        maybe_encrypt(archive, True, "s3cret", logger)

    assert excinfo.value.archive_path == archive
    assert archive.read_bytes() == PLAINTEXT
    assert [p.name for p in archive.parent.iterdir()] == [archive.name]


def test_plaintext_left_behind_is_reported(archive, logger, monkeypatch):
    original_unlink = Path.unlink

    def stubborn_unlink(self, *args, **kwargs):
        if self == archive:
            raise PermissionError("read-only")
        return original_unlink(self, *args, **kwargs)

    monkeypatch.setattr(Path, "unlink", stubborn_unlink)

    with pytest.raises(EncryptionError) as excinfo:
        maybe_encrypt(archive, True, "s3cret", logger)

    assert excinfo.value.archive_path == archive
    assert str(archive) in str(excinfo.value)
    assert (archive.parent / (archive.name + ".enc")).exists()

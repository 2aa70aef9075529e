"""Chiffrement optionnel des archives.

Le format produit est celui de `openssl enc -aes-256-cbc -pbkdf2 -salt` :
en-tête `Salted__`, sel aléatoire de 8 octets, clé et IV dérivés par
PBKDF2-HMAC-SHA256 (10 000 itérations). Une archive se déchiffre donc avec
`openssl enc -d -aes-256-cbc -pbkdf2 -in <fichier>.enc -k <passphrase>`.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from pgbackup.errors import ConfigurationError, EncryptionError

OPENSSL_MAGIC = b"Salted__"
SALT_SIZE = 8
KEY_SIZE = 32
IV_SIZE = 16
PBKDF2_ITERATIONS = 10_000
CHUNK_SIZE = 1024 * 1024


def derive_key_iv(passphrase: str, salt: bytes) -> tuple[bytes, bytes]:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE + IV_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    material = kdf.derive(passphrase.encode("utf-8"))
    return material[:KEY_SIZE], material[KEY_SIZE:]


def encrypt_file(source: Path, destination: Path, passphrase: str) -> None:
    salt = os.urandom(SALT_SIZE)
    key, iv = derive_key_iv(passphrase, salt)
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    padder = padding.PKCS7(algorithms.AES.block_size).padder()

    with source.open("rb") as input_handle, destination.open("wb") as output_handle:
        output_handle.write(OPENSSL_MAGIC + salt)
        for chunk in iter(lambda: input_handle.read(CHUNK_SIZE), b""):
            output_handle.write(encryptor.update(padder.update(chunk)))
        output_handle.write(encryptor.update(padder.finalize()))
        output_handle.write(encryptor.finalize())
        output_handle.flush()
        os.fsync(output_handle.fileno())


def maybe_encrypt(archive_path: Path, enabled: bool, passphrase: str, logger: logging.Logger) -> Path:
    """Chiffre l'archive si demandé et renvoie le chemin de l'artefact final.

    L'archive en clair n'est supprimée qu'une fois le fichier `.enc` écrit,
    synchronisé sur disque et renommé à sa place définitive.

    Raises:
        ConfigurationError: chiffrement demandé sans passphrase.
        EncryptionError: échec du chiffrement ; l'archive en clair est conservée
            et aucun fichier chiffré partiel ne subsiste. Levée aussi quand
            l'archive en clair ne peut être supprimée après le renommage.
    """

    if not enabled:
        return archive_path
    if not passphrase:
        raise ConfigurationError("Chiffrement demandé sans passphrase (ENCRYPT_PASS)")

    encrypted_path = archive_path.with_name(archive_path.name + ".enc")
    partial = archive_path.with_name(f".{encrypted_path.name}.partial")

    logger.info("Chiffrement de %s", archive_path.name)
    try:
        encrypt_file(archive_path, partial, passphrase)
        os.replace(partial, encrypted_path)
    except Exception as exc:  # noqa: BLE001 - toute erreur laisse l'archive en clair intacte
        partial.unlink(missing_ok=True)
        raise EncryptionError(
            f"Chiffrement échoué, archive en clair conservée ({archive_path.name}): {exc}",
            archive_path=archive_path,
        ) from exc

    try:
        archive_path.unlink()
    except OSError as exc:
        raise EncryptionError(
            f"Archive chiffrée écrite ({encrypted_path.name}) mais archive en clair "
            f"non supprimée, à retirer manuellement: {archive_path}: {exc}",
            archive_path=archive_path,
        ) from exc
    logger.info("Archive chiffrée: %s", encrypted_path)
    return encrypted_path

"""
pwtree - Attack Demonstration

Run: python attack_demo.py

What it shows:
1) A wrong password cannot open the store.
2) Tampering with the encrypted file is detected (most of the time).
3) The CBC limitation: flipping IV bits silently changes the plaintext.
4) After a password change, the old password no longer works.
5) The store file is readable by its owner only.
"""

import os
import stat
import tempfile

from pwtree import crypto
from pwtree.errors import DecryptionFailed
from pwtree.vault import Vault


LINE = "=" * 70


def section(title: str):
    print(f"\n{LINE}\n{title}\n{LINE}")


def main():
    tmp = tempfile.TemporaryDirectory()
    path = os.path.join(tmp.name, "store.enc")
    master_password = "CorrectHorseBatteryStaple!"

    vault = Vault(path)
    vault.open(master_password)
    vault.set("email/gmail", "super_secret_password")
    vault.set("bank/pin", "1234")
    vault.flush()
    vault.close()

    # 1) Wrong password
    section("Attack 1: Wrong password")
    try:
        Vault(path).open("wrong_password")
        print("Unexpected: store opened with wrong password")
    except DecryptionFailed as e:
        print(f"Expected failure: {e}")

    # 2) Ciphertext tampering (last block breaks the padding)
    section("Attack 2: Ciphertext tampering")
    with open(path, "rb") as f:
        original = f.read()
    tampered = bytearray(original)
    tampered[-1] ^= 1
    with open(path, "wb") as f:
        f.write(bytes(tampered))
    try:
        Vault(path).open(master_password)
        print("Unexpected: tampered file still opened")
    except DecryptionFailed as e:
        print(f"Expected failure: {e}")
    with open(path, "wb") as f:
        f.write(original)

    # 3) The known CBC limitation
    section("Attack 3: IV bit flip (no integrity tag)")
    key = os.urandom(crypto.KEY_LEN)
    blob = bytearray(crypto.encrypt(key, b"pay 100 to alice"))
    blob[4] ^= ord("1") ^ ord("9")
    forged = crypto.decrypt(key, bytes(blob))
    print(f"Decrypted without error to: {forged!r}")
    print("CBC + PKCS7 only catches broken padding; a MAC would be needed to catch this.")

    # 4) Password rotation
    section("Attack 4: Old password after rotation")
    vault = Vault(path)
    vault.open(master_password)
    count = vault.rotate("NewMasterPassword123!")
    vault.flush()
    vault.close()
    print(f"Re-encrypted {count} value(s) under the new password.")
    try:
        Vault(path).open(master_password)
        print("Unexpected: old password still works")
    except DecryptionFailed:
        print("As expected: old password fails after rotation.")
    vault = Vault(path)
    vault.open("NewMasterPassword123!")
    print(f"New password opens the store; email/gmail decrypts: {vault.get('email/gmail') == 'super_secret_password'}")
    vault.close()

    # 5) File permissions
    section("Check 5: File permissions")
    mode = stat.S_IMODE(os.stat(path).st_mode)
    print(f"Store file mode: {oct(mode)}")

    tmp.cleanup()
    print("\nDemo complete.")


if __name__ == "__main__":
    main()

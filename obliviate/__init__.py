"""
Obliviate keeps an age key behind a passphrase and edits sops secrets safely.

The private key is stored encrypted with a passphrase. Decrypting it writes
the plaintext key where sops looks for it, and the plaintext is securely
erased again after the auto-delete interval (30 minutes by default).

Every sops operation that modifies a file takes a backup first, and rolls
the file back if sops fails. Backups are kept in the backup directory, up
to five per file name:

\b
    <backup-dir>/<name>-<YYYYMMDD-HHMMSS>.bak

The age, age-keygen and sops commands perform all encryption and
decryption. Configure default recipients and intervals in the config file:

\b
    {
      "auto_delete_interval": "30m0s",
      "default_recipients": "age1..."
    }
"""

__version__ = '0.1.0'

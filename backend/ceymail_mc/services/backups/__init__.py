"""Backup orchestration for the mail server: archives of config, databases, DKIM keys and mail."""

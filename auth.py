import hmac
import os


def cron_secret():
    return os.environ.get('CRON_SECRET') or None


def is_authorized_cron(authorization_header):
    """Check the sweep trigger's `Authorization: Bearer <CRON_SECRET>` header.

    Without a configured secret the endpoint is open.
    """
    secret = cron_secret()
    if not secret:
        return True
    if not authorization_header:
        return False
    return hmac.compare_digest(authorization_header, f'Bearer {secret}')

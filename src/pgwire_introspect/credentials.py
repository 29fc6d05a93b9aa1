import hashlib


def md5hex(s: bytes) -> bytes:
    return hashlib.md5(s).hexdigest().encode()


def md5_password_hash(user: str, password: str, salt: bytes) -> str:
    """Password payload for AuthenticationMD5Password: md5(md5(password + user) + salt)"""
    shadow = md5hex(password.encode('utf-8') + user.encode('utf-8'))
    return "md5" + md5hex(shadow + salt).decode()

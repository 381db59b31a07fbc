from .canonical import canonicalize, digest, random_id

__all__ = ["canonicalize", "digest", "random_id"]

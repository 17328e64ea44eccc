from .filename import force_extension, sanitize_filename, with_extension

__all__ = ["force_extension", "sanitize_filename", "with_extension"]

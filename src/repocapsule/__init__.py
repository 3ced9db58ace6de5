"""
RepoCapsule - Pack a directory tree into a single self-extracting artifact.

The artifact is an executable Python script that carries every included file,
the exclusion rules it was built with, and a stamped SHA-256 digest of the
source tree. Running it reconstructs the tree, verifies it, or diffs it
against a working copy, using nothing but the Python standard library.

Example usage:
    $ repocapsule build ./my-project --version 1.2.0
    $ python setup-my-project.py --target-dir /tmp/restore
    $ python setup-my-project.py --target-dir /tmp/restore --verify
"""

__version__ = "0.1.0"
__author__ = "RepoCapsule Contributors"

__all__ = [
    "__version__",
    "__author__",
]

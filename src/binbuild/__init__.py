"""binbuild - cross-compile native packages for many platforms from one Linux host."""

__version__ = "0.1.0"

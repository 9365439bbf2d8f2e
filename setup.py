"""
Setup file.
"""

import os

from setuptools import setup

URL = "https://github.com/zackees/binbuild"
KEYWORDS = "cross-compilation toolchain sandbox build binary packaging linux windows macos"
HERE = os.path.dirname(os.path.abspath(__file__))



if __name__ == "__main__":
    setup(
        maintainer="Zachary Vorhies",
        keywords=KEYWORDS,
        url=URL,
    )

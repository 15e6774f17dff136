from __future__ import annotations

VERSION = "v0.3.0"
BUILD_METADATA = "unreleased"
GIT_COMMIT = ""


def get_version() -> str:
    if not BUILD_METADATA:
        return VERSION
    return f"{VERSION}+{BUILD_METADATA}"

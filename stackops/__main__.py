# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Allow ``python -m stackops``."""

from stackops.cli import app

if __name__ == "__main__":
    app()

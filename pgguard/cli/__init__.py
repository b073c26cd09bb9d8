# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Command line tools: pgguard-cluster, pgguard-restore and pgguard-verify.
"""

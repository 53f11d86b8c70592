# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""HTTP and MCP server surfaces for frags."""

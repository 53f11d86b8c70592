# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Model adapters implementing the Ai protocol."""

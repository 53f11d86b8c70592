"""
Function collections that plans can expose to models.

Each module declares ``FUNCTIONS``: name -> {func, description, input_schema}.
``frags.tools`` binds them to a FunctionRegistry.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

COLLECTIONS = ("fs", "http", "postgres")

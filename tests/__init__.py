"""
Test package marker so `tests.fakes` is importable from every test module.
"""

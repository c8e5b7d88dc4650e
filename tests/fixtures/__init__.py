"""
Synthetic AnnData factories shared by the test suite
"""

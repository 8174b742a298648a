"""
Pytest configuration for Django tests.
"""
import os

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "vendorhub.settings_test")

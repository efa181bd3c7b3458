"""
Root pytest configuration.
Sets the testing environment before the application modules are imported.
"""
import os

# Set testing environment before importing app
os.environ["TESTING"] = "True"
os.environ["DEBUG"] = "False"
os.environ["EMAIL_USE_CELERY"] = "False"
os.environ.setdefault("LOG_LEVEL", "WARNING")

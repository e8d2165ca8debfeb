"""
REST API for the IAM Provisioner.
"""

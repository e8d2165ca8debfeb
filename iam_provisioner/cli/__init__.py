"""
Command line interface for the IAM Provisioner.
"""

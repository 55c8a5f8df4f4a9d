"""
Service wiring for the provisioning server
"""

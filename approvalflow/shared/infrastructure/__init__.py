"""
Infrastructure Layer
=====================

Low-level technical concerns shared by both contexts:
- Logging setup
- Organizational hierarchy adapters
- Notification webhook client
"""

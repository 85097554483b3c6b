"""
Mail Sync Engine

Keeps a local MongoDB mail store in step with external mailbox providers
(Gmail API, Microsoft Graph, IMAP/SMTP) through scheduled polling and
provider push notifications.
"""

__version__ = "1.0.0"

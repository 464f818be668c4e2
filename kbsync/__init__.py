"""
kbsync: keeps a knowledge-base vector store in sync with Notion and Slack.
"""

__version__ = '0.1.0'

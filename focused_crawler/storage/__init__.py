"""
Storage for relevant pages found by the crawler.
"""

from .target_storage import FileTargetStorage, TargetPage, TargetStorage, TargetStorageError

__all__ = ['FileTargetStorage', 'TargetPage', 'TargetStorage', 'TargetStorageError']

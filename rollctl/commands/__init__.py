from . import images, status, upgrade, urls

__all__ = ['images', 'status', 'upgrade', 'urls']

"""
inkmirror: mirror a live web page onto an IT8951 e-ink panel.

Damage reported by the page is coalesced into partial refreshes; a
periodic full refresh cleans up ghosting. See coordinator.py for the
pipeline and display/ for the panel backends.
"""

__version__ = '0.3.0'

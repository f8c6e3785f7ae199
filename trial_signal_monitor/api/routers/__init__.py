"""
API Routers Package
"""

from trial_signal_monitor.api.routers import detection, signals, trials

__all__ = ['detection', 'signals', 'trials']

"""Text generation providers"""

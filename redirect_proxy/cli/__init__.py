"""Command line helpers for the redirect proxy"""

"""UploadGuard core components.

This package contains the scan result types, the file access validator, the
content signature table and format identifier, and the scan engine that
dispatches uploaded files to the threat scanners.
"""

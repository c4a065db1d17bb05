"""
Notification template rendering.

Templates are static message definitions stored in the environment
config; the renderer fills them from a billing event context.
"""
from templates.renderer import TemplateRenderer, format_value, placeholders

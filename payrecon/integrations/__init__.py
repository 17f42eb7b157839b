# payrecon/integrations/__init__.py

from payrecon.integrations import bepaid

__all__ = ["bepaid"]

from .protocol import InvokableTool
from .server_tool import ServerToolAdapter, ToolCatalog, content_text, function_name

__all__ = ["InvokableTool", "ServerToolAdapter", "ToolCatalog", "content_text", "function_name"]

from typing import Annotated as Annotated

from .param import runtime as runtime
from .param import spec as spec
from .registry import ToolRegistry as ToolRegistry
from .tool import Tool as Tool
from .tool import ToolReturn as ToolReturn
from .tool import tool as tool

"""
iterai - iterative LLM completions with tool calls, fan-in and throttling.
"""

__version__ = "0.1.0"

from ididi import Graph as Graph

from .cancellation import CancellationToken as CancellationToken
from .consolidate import consolidate_calls as consolidate_calls
from .consolidate import consolidate_parallel_calls as consolidate_parallel_calls
from .engine import CompletionEngine as CompletionEngine
from .executor import LoggingToolExecutor as LoggingToolExecutor
from .executor import ToolExecutor as ToolExecutor
from .history import Conversation as Conversation
from .history import Identity as Identity
from .history import SimulatedToolCall as SimulatedToolCall
from .llm import CompletionSettings as CompletionSettings
from .llm import LLMProviderBase as LLMProviderBase
from .streams import merge_with_task_id as merge_with_task_id
from .streams import throttle as throttle
from .tools import Annotated as Annotated
from .tools import ToolRegistry as ToolRegistry
from .tools import runtime as runtime
from .tools import spec as spec
from .tools import tool as tool

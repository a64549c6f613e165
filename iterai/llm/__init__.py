from .models import CompletionSettings as CompletionSettings
from .models import LLMProviderBase as LLMProviderBase
from .models import LLMRequest as LLMRequest
from .models import LLMResponse as LLMResponse
from .models import LLMResponseFormat as LLMResponseFormat
from .models import LLMResponseMeta as LLMResponseMeta
from .models import LLMStreamChunk as LLMStreamChunk
from .models import LLMToolCall as LLMToolCall
from .models import LLMToolCallDelta as LLMToolCallDelta
from .models import LLMUsage as LLMUsage

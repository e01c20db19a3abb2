"""Streaming augmentation pipeline: normalize, detect blocks, augment, deliver."""
from .models import (
    Augment,
    AugmentedEvent,
    BlockKind,
    CanonicalMessage,
    CompletedBlock,
    ControlEvent,
    ControlKind,
    EditAugment,
    MarkdownAugment,
    PendingEvent,
    PlanAugment,
    ProviderFamily,
    ReadAugment,
    Role,
    StreamEvent,
    TextPart,
    ToolCall,
    ToolResult,
    ToolResultPart,
    ToolUsePart,
    WriteAugment,
    event_to_dict,
)
from .config import AugmentConfig, AugmentLimits, load_yaml_config
from .errors import (
    AugmentationError,
    ConfigError,
    GeneratorError,
    UnknownToolResultError,
    UpstreamError,
)
from .normalizer import detect_family, normalize
from .block_detector import BlockDetector, PendingDelta
from .generators import build_generator_table
from .coordinator import StreamCoordinator
from .augmenter import StreamAugmenter

__all__ = [
    "Augment",
    "AugmentConfig",
    "AugmentLimits",
    "AugmentationError",
    "AugmentedEvent",
    "BlockDetector",
    "BlockKind",
    "CanonicalMessage",
    "CompletedBlock",
    "ConfigError",
    "ControlEvent",
    "ControlKind",
    "EditAugment",
    "GeneratorError",
    "MarkdownAugment",
    "PendingDelta",
    "PendingEvent",
    "PlanAugment",
    "ProviderFamily",
    "ReadAugment",
    "Role",
    "StreamAugmenter",
    "StreamCoordinator",
    "StreamEvent",
    "TextPart",
    "ToolCall",
    "ToolResult",
    "ToolResultPart",
    "ToolUsePart",
    "UnknownToolResultError",
    "UpstreamError",
    "WriteAugment",
    "build_generator_table",
    "detect_family",
    "event_to_dict",
    "load_yaml_config",
    "normalize",
]

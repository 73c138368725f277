"""处理步骤模块 (steps.py)

流水线对每个新对象调用的可插拔处理能力。所有实现都必须是确定性的：
相同的输入记录得到相同的元数据，从而保证重试与重复投递的幂等性。
超时由编排器负责，步骤本身不做超时控制。

可选实现（通过 PROCESSING_STEP 配置选择）：
- validation: 仅校验内容类型、大小和存储键
- metadata: 校验 + 提取基础元数据
- derivative: 校验 + 元数据 + 派生文件的存储键
"""

from __future__ import annotations

from typing import Any, Callable, Dict, NamedTuple, Protocol

from loguru import logger

from ..config import Settings
from .errors import ProcessingStepFailure
from .models import MediaRecord


class StepResult(NamedTuple):
    """处理步骤的成功结果"""
    metadata: Dict[str, Any]


class ProcessingStep(Protocol):
    """处理步骤能力接口

    失败时抛出 ProcessingStepFailure，通过 retryable 区分业务失败与基础设施故障。
    """

    name: str

    async def execute(self, record: MediaRecord) -> StepResult:
        ...


# 派生文件变体名称
VARIANT_PROCESSED = "processed"
VARIANT_THUMBNAIL_PREFIX = "thumb_"


def get_file_extension(storage_key: str) -> str:
    """从存储键中提取扩展名（含点号，小写），没有扩展名时返回空字符串"""
    filename = storage_key.rsplit("/", 1)[-1]
    last_dot = filename.rfind(".")
    if last_dot <= 0:
        return ""
    return filename[last_dot:].lower()


def build_variant_key(media_id: str, variant: str, extension: str) -> str:
    """构造派生文件的存储键，如 'abc-123/processed.jpeg'"""
    return f"{media_id}/{variant}{extension}"


def classify_media_kind(content_type: str) -> str:
    """根据内容类型的主类型归类媒体种类"""
    major = content_type.split("/", 1)[0].strip().lower()
    if major in ("image", "video", "audio"):
        return major
    return "other"


def format_size(size_bytes: int) -> str:
    """将字节数格式化为易读字符串"""
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


class ValidationStep:
    """只做校验的处理步骤"""

    name = "validation"

    def __init__(self, *, allowed_content_types: set[str], max_size_bytes: int):
        self.allowed_content_types = {t.lower() for t in allowed_content_types}
        self.max_size_bytes = max_size_bytes

    def validate(self, record: MediaRecord) -> None:
        """校验记录，违规时抛出不可重试的 ProcessingStepFailure"""
        if not record.storage_key or record.storage_key.endswith("/"):
            raise ProcessingStepFailure(f"无效的存储键: '{record.storage_key}'")

        content_type = (record.content_type or "").split(";", 1)[0].strip().lower()
        if content_type not in self.allowed_content_types:
            raise ProcessingStepFailure(f"不支持的内容类型: {record.content_type}")

        if record.size_bytes <= 0:
            raise ProcessingStepFailure("对象为空 (sizeBytes=0)")

        if record.size_bytes > self.max_size_bytes:
            raise ProcessingStepFailure(
                f"对象过大: {record.size_bytes} 字节，上限 {self.max_size_bytes} 字节"
            )

    def describe(self, record: MediaRecord) -> Dict[str, Any]:
        return {"validated": True}

    async def execute(self, record: MediaRecord) -> StepResult:
        self.validate(record)
        metadata = self.describe(record)
        logger.debug(f"处理步骤 {self.name} 完成: media_id={record.media_id}")
        return StepResult(metadata=metadata)


class MetadataExtractionStep(ValidationStep):
    """校验并提取基础元数据"""

    name = "metadata"

    def describe(self, record: MediaRecord) -> Dict[str, Any]:
        metadata = super().describe(record)
        metadata.update(
            {
                "kind": classify_media_kind(record.content_type),
                "extension": get_file_extension(record.storage_key),
                "contentType": record.content_type.split(";", 1)[0].strip().lower(),
                "sizeBytes": record.size_bytes,
                "sizeLabel": format_size(record.size_bytes),
            }
        )
        return metadata


class DerivativeStep(MetadataExtractionStep):
    """在元数据基础上规划派生文件（处理后文件与缩略图）的存储键

    只有图片会生成缩略图键，其他媒体只生成 processed 变体。
    """

    name = "derivative"

    def __init__(self, *, allowed_content_types: set[str], max_size_bytes: int, widths: list[int]):
        super().__init__(allowed_content_types=allowed_content_types, max_size_bytes=max_size_bytes)
        self.widths = sorted(set(widths))

    def describe(self, record: MediaRecord) -> Dict[str, Any]:
        metadata = super().describe(record)
        extension = metadata["extension"]
        derivatives = {
            VARIANT_PROCESSED: build_variant_key(record.media_id, VARIANT_PROCESSED, extension),
        }
        if metadata["kind"] == "image":
            for width in self.widths:
                variant = f"{VARIANT_THUMBNAIL_PREFIX}{width}"
                derivatives[variant] = build_variant_key(record.media_id, variant, extension)
        metadata["derivatives"] = derivatives
        return metadata


def _build_validation(settings: Settings) -> ProcessingStep:
    return ValidationStep(
        allowed_content_types=settings.get_allowed_content_types(),
        max_size_bytes=settings.MAX_FILE_SIZE_MB * 1024 * 1024,
    )


def _build_metadata(settings: Settings) -> ProcessingStep:
    return MetadataExtractionStep(
        allowed_content_types=settings.get_allowed_content_types(),
        max_size_bytes=settings.MAX_FILE_SIZE_MB * 1024 * 1024,
    )


def _build_derivative(settings: Settings) -> ProcessingStep:
    return DerivativeStep(
        allowed_content_types=settings.get_allowed_content_types(),
        max_size_bytes=settings.MAX_FILE_SIZE_MB * 1024 * 1024,
        widths=settings.get_derivative_widths(),
    )


STEP_REGISTRY: Dict[str, Callable[[Settings], ProcessingStep]] = {
    "validation": _build_validation,
    "metadata": _build_metadata,
    "derivative": _build_derivative,
}


def build_processing_step(name: str, settings: Settings) -> ProcessingStep:
    """根据名称构造处理步骤

    Raises:
        ValueError: 名称未注册
    """
    try:
        factory = STEP_REGISTRY[name]
    except KeyError:
        raise ValueError(f"未注册的处理步骤: {name}") from None
    step = factory(settings)
    logger.info(f"已加载处理步骤: {step.name}")
    return step

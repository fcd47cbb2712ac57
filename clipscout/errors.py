# 异常分类：任务层据此决定重试还是直接失败


class ClipscoutError(Exception):
    pass


class RetryableJobError(ClipscoutError):
    """可重试：网络、上游 5xx、解析失败等，交给退避重试"""


class FatalJobError(ClipscoutError):
    """不可重试：配置错误、找不到适配器等，重试也不会好"""


class AdapterError(RetryableJobError):
    pass


class AdapterNotFoundError(FatalJobError):
    def __init__(self, source_type: str):
        super().__init__(f"No adapter found for source type: {source_type}")
        self.source_type = source_type


class ConfigurationError(FatalJobError):
    pass


class RecordNotFoundError(FatalJobError):
    pass

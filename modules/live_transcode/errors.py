"""
直播转码异常定义
"""


class LiveTranscodeError(Exception):
    """直播转码基础异常"""


class InvalidStreamKeyError(LiveTranscodeError):
    """推流密钥为空或包含非法字符"""


class JobConfigError(LiveTranscodeError):
    """任务配置错误（如码率档位为空）"""


class SpawnError(LiveTranscodeError):
    """FFmpeg 进程启动失败

    包括可执行文件不存在、参数错误、输出目录不可写等情况。
    """

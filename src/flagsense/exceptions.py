"""flagsense ライブラリの例外型定義"""

from __future__ import annotations


class FlagsenseError(Exception):
    """flagsense ライブラリのエラー基底クラス。"""

    default_code: str = "FLAGSENSE_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class FlagsenseErrorCodes:
    """FlagsenseError のエラーコード定数。"""

    CONFIG_ERROR: str = "CONFIG_ERROR"
    NOT_INITIALIZED: str = "NOT_INITIALIZED"
    FLAG_NOT_FOUND: str = "FLAG_NOT_FOUND"
    MALFORMED_DEFINITION: str = "MALFORMED_DEFINITION"
    HTTP_ERROR: str = "HTTP_ERROR"
    CONNECTION_ERROR: str = "CONNECTION_ERROR"
    INVALID_RESPONSE: str = "INVALID_RESPONSE"
    INVALID_REQUEST: str = "INVALID_REQUEST"
    READ_FILE: str = "READ_FILE_ERROR"
    PARSE_YAML: str = "PARSE_YAML_ERROR"
    VALIDATION: str = "VALIDATION_ERROR"


class ConfigurationError(FlagsenseError):
    """SDK 認証情報が不正な場合のエラー。構築時に送出される。"""

    default_code = FlagsenseErrorCodes.CONFIG_ERROR


class NotInitializedError(FlagsenseError):
    """設定スナップショットが未取得の場合のエラー。"""

    default_code = FlagsenseErrorCodes.NOT_INITIALIZED


class UnknownFlagError(FlagsenseError):
    """同期済みデータにフラグが存在しない場合のエラー。"""

    default_code = FlagsenseErrorCodes.FLAG_NOT_FOUND

    def __init__(self, flag_id: str) -> None:
        super().__init__(f"flag not found: {flag_id}")
        self.flag_id = flag_id


class MalformedDefinitionError(FlagsenseError):
    """フラグ・実験・セグメント定義の形式が不正な場合のエラー。"""

    default_code = FlagsenseErrorCodes.MALFORMED_DEFINITION


class TransportError(FlagsenseError):
    """ネットワーク・HTTP エラー。ホストへは送出されない。"""

    default_code = FlagsenseErrorCodes.HTTP_ERROR

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status_code: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, code=code, cause=cause)
        self.status_code = status_code


class SettingsError(FlagsenseError):
    """設定ファイルの読み込み・検証エラー。"""

    default_code = FlagsenseErrorCodes.VALIDATION

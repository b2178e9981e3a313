"""例外定義."""


class MpnIndexError(Exception):
    """このパッケージの例外の基底クラス."""


class CatalogError(MpnIndexError):
    """Shopify API 呼び出しの失敗（HTTP エラー・GraphQL エラー）."""


class BulkExportError(CatalogError):
    """バルクエクスポートの失敗・キャンセル・期限切れ."""


class BulkExportTimeout(BulkExportError):
    """バルクエクスポートのポーリング回数上限に到達."""


class MissingKeyError(MpnIndexError, ValueError):
    """正規化後の MPN が空のレコードを upsert しようとした."""


class JobStateError(MpnIndexError):
    """終了済みジョブへの再度の完了処理など、不正な状態遷移."""


class SyncAlreadyRunningError(MpnIndexError):
    """同じ種別の同期ジョブが実行中."""

    def __init__(self, sync_type: str, job_id: int):
        super().__init__(f"sync '{sync_type}' is already running (job #{job_id})")
        self.sync_type = sync_type
        self.job_id = job_id


class SearchError(MpnIndexError):
    """検索処理の失敗. 内部の原因は呼び出し元に公開しない."""

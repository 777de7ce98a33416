from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, List, Optional

from financial_models import MatchPatch, WriteFailure, WriteReport
from record_store import RecordStore


class BatchWriter:
    """パッチをバッチ単位で並列適用する

    1バッチ内の書き込みはすべて同時に発行し、全件の完了（成功/失敗）を待ってから
    次のバッチに進む。個々の失敗はバッチや実行全体を止めない。
    """

    def __init__(self, store: RecordStore, batch_size: int = 50, dry_run: bool = True,
                 progress_callback: Optional[Callable[[int, int], None]] = None):
        self.store = store
        self.batch_size = max(1, batch_size)
        self.dry_run = dry_run
        self.progress_callback = progress_callback

    def _write_one(self, patch: MatchPatch) -> Optional[WriteFailure]:
        try:
            self.store.upsert_patch(patch.collection, patch.record_id, patch.fields)
        except Exception as e:
            return WriteFailure(record_id=f"{patch.collection}/{patch.record_id}", reason=str(e))
        return None

    def apply(self, patches: List[MatchPatch], label: str = "reconcile") -> WriteReport:
        report = WriteReport(label=label, attempted=len(patches), dry_run=self.dry_run)
        if self.dry_run:
            print(f"  🔵 [DRY RUN] {label}: {len(patches)}件の書き込みをスキップ")
            return report
        if not patches:
            return report

        print(f"  📝 [{label}] {len(patches)}件を書き込み中 (バッチサイズ {self.batch_size})...")
        with ThreadPoolExecutor(max_workers=self.batch_size) as executor:
            for start in range(0, len(patches), self.batch_size):
                batch = patches[start:start + self.batch_size]
                futures = [executor.submit(self._write_one, p) for p in batch]
                wait(futures)

                failures = [f.result() for f in futures if f.result() is not None]
                report.succeeded += len(batch) - len(failures)
                report.failures.extend(failures)
                if failures:
                    print(f"  ❌ [{label}] バッチ{start // self.batch_size}: {len(failures)}件失敗")
                if self.progress_callback:
                    self.progress_callback(min(start + len(batch), len(patches)), len(patches))

        print(f"  ✅ [{label}] 成功 {report.succeeded} / 失敗 {report.failed}")
        return report

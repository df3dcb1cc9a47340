"""Progress reporting for cache refreshes"""

from typing import Dict, Optional

from tqdm import tqdm


class ProgressReporter:
    """Receives (shard, loaded, total) after every page; the default reports nothing"""

    def update(self, shard: str, loaded: int, total: int) -> None:
        pass

    def finish(self, shard: str) -> None:
        pass

    def close(self) -> None:
        pass


class TqdmProgressReporter(ProgressReporter):
    """One tqdm bar per shard, used by the CLI in interactive mode"""

    def __init__(self, unit: str = "records", leave: bool = True):
        self.unit = unit
        self.leave = leave
        self._bars: Dict[str, tqdm] = {}
        self._loaded: Dict[str, int] = {}

    def _bar(self, shard: str, total: Optional[int]) -> tqdm:
        bar = self._bars.get(shard)
        if bar is None:
            bar = tqdm(total=total or None, desc=f"Shard {shard}", unit=self.unit, leave=self.leave)
            self._bars[shard] = bar
            self._loaded[shard] = 0
        return bar

    def update(self, shard: str, loaded: int, total: int) -> None:
        bar = self._bar(shard, total)
        if total and bar.total != total:
            bar.total = total
            bar.refresh()
        delta = loaded - self._loaded[shard]
        if delta > 0:
            bar.update(delta)
            self._loaded[shard] = loaded

    def finish(self, shard: str) -> None:
        bar = self._bars.pop(shard, None)
        self._loaded.pop(shard, None)
        if bar is not None:
            bar.close()

    def close(self) -> None:
        for shard in list(self._bars):
            self.finish(shard)

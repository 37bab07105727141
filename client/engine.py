from typing import Callable, List, Optional, Protocol


class GameEngine(Protocol):
    """The emulator a host session drives. Only its edges matter here."""

    on_frame: Optional[Callable[[List[int]], None]]
    on_audio_sample: Optional[Callable[[float, float], None]]
    paused: bool

    def load_image(self, data: bytes) -> bool: ...

    def reset(self) -> None: ...

    def button_down(self, seat_index: int, button_id: str) -> None: ...

    def button_up(self, seat_index: int, button_id: str) -> None: ...

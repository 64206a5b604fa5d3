"""增量 Server-Sent Events 解码器。

网络读到的字节块可能在任意位置被切开（行中间、\\r\\n 之间、甚至 UTF-8
多字节字符中间），解码器把未完成的部分缓存在私有缓冲区里，
只在拿到完整的事件（以空行结束）后才返回 SSEMessage。

每个适配器实例各持有一个解码器，生命周期等同于一次调用。
"""

from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class SSEMessage:
    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


class SSEDecoder:
    def __init__(self) -> None:
        self._buffer = b""
        self._event: Optional[str] = None
        self._data: List[str] = []
        self._id: Optional[str] = None
        self._retry: Optional[int] = None

    def reset(self) -> None:
        self._buffer = b""
        self._event = None
        self._data = []
        self._id = None
        self._retry = None

    @property
    def pending(self) -> bool:
        """缓冲区中是否还有未组成完整事件的内容。"""

        return bool(self._buffer.strip()) or bool(self._data)

    def feed(self, chunk: bytes) -> List[SSEMessage]:
        """追加字节并返回当前已完整的事件。

        Raises:
            UnicodeDecodeError: 某一完整行不是合法 UTF-8。
        """

        self._buffer += chunk
        messages: List[SSEMessage] = []
        while True:
            line = self._next_line(final=False)
            if line is None:
                break
            message = self._process_line(line)
            if message is not None:
                messages.append(message)
        return messages

    def flush(self) -> List[SSEMessage]:
        """流结束时调用：处理最后一行并派发未以空行结束的事件。"""

        messages: List[SSEMessage] = []
        while True:
            line = self._next_line(final=True)
            if line is None:
                break
            message = self._process_line(line)
            if message is not None:
                messages.append(message)
        message = self._dispatch()
        if message is not None:
            messages.append(message)
        return messages

    def _next_line(self, final: bool) -> Optional[str]:
        buf = self._buffer
        if not buf:
            return None
        idx_n = buf.find(b"\n")
        idx_r = buf.find(b"\r")
        if idx_r != -1 and (idx_n == -1 or idx_r < idx_n):
            # \r 在缓冲区末尾时无法判断后面是否跟着 \n，等待更多字节
            if idx_r == len(buf) - 1 and not final:
                return None
            skip = 2 if buf[idx_r + 1 : idx_r + 2] == b"\n" else 1
            raw, self._buffer = buf[:idx_r], buf[idx_r + skip :]
        elif idx_n != -1:
            raw, self._buffer = buf[:idx_n], buf[idx_n + 1 :]
        elif final:
            raw, self._buffer = buf, b""
        else:
            return None
        return raw.decode("utf-8")

    def _process_line(self, line: str) -> Optional[SSEMessage]:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if name == "event":
            self._event = value
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            self._id = value
        elif name == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _dispatch(self) -> Optional[SSEMessage]:
        if not self._data and self._event is None:
            return None
        message = SSEMessage(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self._id,
            retry=self._retry,
        )
        self._event = None
        self._data = []
        return message

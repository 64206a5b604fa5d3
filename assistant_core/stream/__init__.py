"""流式事件折叠（StreamAssembler）。"""

from assistant_core.stream.assembler import AssemblyResult, StreamAssembler

__all__ = ["AssemblyResult", "StreamAssembler"]

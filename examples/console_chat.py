"""命令行下的最小聊天演示：推理内容与回答内容分段输出。"""

import sys

from zenbot_core import get_default_service
from zenbot_core.domain.exceptions import BusinessError


class ConsoleSink:
    def __init__(self):
        self._printed = []

    def __call__(self, update) -> None:
        # 一个帧可能同时新建多个分段，按 tail 逐段补打
        for i, msg in enumerate(update.tail):
            if i == len(self._printed):
                print(f"\n[{msg.channel}] ", end="")
                self._printed.append(0)
            print(msg.content[self._printed[i]:], end="", flush=True)
            self._printed[i] = len(msg.content)


if __name__ == "__main__":
    service = get_default_service()
    question = " ".join(sys.argv[1:]) or "你好，请介绍一下自己。"
    print("User:", question)
    try:
        outcome = service.send(question, ConsoleSink())
    except BusinessError as e:
        print(f"\nError: [{e.code}] {e.message}")
        sys.exit(1)
    print(f"\n-- {outcome.state.value}, {outcome.frames} frames")

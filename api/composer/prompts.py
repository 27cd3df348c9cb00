"""
Prompt templates for the HCMUTE campus assistant.

The system prompt fixes the persona and the grounding rules; the human turn
carries the user's question and the retrieved context block.
"""

from typing import List

from langchain_core.messages import BaseMessage
from langchain_core.prompts import ChatPromptTemplate


CAMPUS_ASSISTANT_SYSTEM_PROMPT = """Bạn là trợ lý AI giúp người dùng tìm kiếm thông tin về Trường Đại học Sư phạm Kỹ thuật Thành phố Hồ Chí Minh (HCMUTE).
Trường chuyên đào tạo các ngành kỹ thuật, công nghệ và sư phạm kỹ thuật, có cơ sở tại Thành phố Hồ Chí Minh.

Quy tắc trả lời:
- Khi phần Context có thông tin liên quan, chỉ trả lời dựa trên Context đó.
- Khi Context trống hoặc không liên quan, có thể dùng kiến thức chung nhưng phải nói rõ rằng câu trả lời không dựa trên tài liệu của trường.
- Tuyệt đối không bịa đặt số liệu, tên người, học phí, thời hạn hay quy định.
- Nếu câu hỏi mơ hồ, hãy hỏi lại người dùng để làm rõ trước khi trả lời.
- Trả lời chi tiết, rõ ràng, bằng ngôn ngữ của người hỏi."""

ANSWER_HUMAN_TEMPLATE = "Câu hỏi: {question}\n\nContext: {context}"

ANSWER_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", CAMPUS_ASSISTANT_SYSTEM_PROMPT),
    ("human", ANSWER_HUMAN_TEMPLATE),
])


def build_answer_messages(question: str, context: str) -> List[BaseMessage]:
    """Format the system + human messages for one answer."""
    return ANSWER_TEMPLATE.format_messages(question=question, context=context)

"""
LLM Package

Summarization collaborator for batch analysis::

    from invoiceflow.llm import LLMSummarizer

    summarizer = LLMSummarizer(settings)
    result = await summarizer.summarize(payload, max_content_length=4000)
"""

from invoiceflow.llm.summarizer import LLMSummarizer, SummaryResult, Summarizer

__all__ = ["LLMSummarizer", "SummaryResult", "Summarizer"]

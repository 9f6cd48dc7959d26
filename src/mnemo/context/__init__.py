"""
Context module - per-turn working memory pipeline.

Flow: MemoryContextService -> WorkingMemoryAssembler (parallel store reads)
-> RelevanceScorer -> ContextCompressor -> bounded context.
SemanticExtractor runs in the background via ExtractionWorker.
"""

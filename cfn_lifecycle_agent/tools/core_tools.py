"""Static guidance the core agent uses to break a user query down before answering."""

PROMPT_UNDERSTANDING = """# Turning a user query into AWS guidance

## 1. Analyse the query
- Pull out the technical requirements and the business goal behind them
- Note constraints the user states: budget, region, compliance, existing stack
- Decide whether this is a new build or a change to something that already runs

## 2. Identify the architecture
- Classify the workload (web API, batch, event driven, data pipeline, ML)
- Work out where data lives and how it moves between components
- List integration points and the security boundary around each

## 3. Map to AWS services and tools
- CloudFormation tools: create, inspect, update and delete stacks, read resource schemas
- Documentation tools: search_documentation to find pages, read_documentation to quote
  them, recommend to find related pages
- Prefer managed services over self-managed infrastructure unless the user says otherwise

## 4. Answer
- Lead with the recommended design, then the services involved and why each one fits
- Cite documentation pages for every non-obvious claim
- Call out cost, security and operational trade-offs explicitly
- Finish with concrete next steps the user can run
"""


def prompt_understanding() -> str:
    return PROMPT_UNDERSTANDING

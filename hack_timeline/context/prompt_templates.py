"""
LLM prompt templates - exploit protocol name and involved token tickers
"""

NO_TOKENS = "N/A"


def protocol_name_prompt(text: str) -> str:
    return f"""You are a specialized AI assistant for DeFi security analysis. Extract the name of the hacked DeFi protocol from the text below and give both the original and a cleaned version of the name.

Rules:
1. Identify the primary DeFi protocol that was hacked.
2. First part: the name exactly as it appears in the text.
3. Second part: a cleaned version of the name:
   a. lowercase
   b. without generic suffixes and domain extensions (.fi, .finance, .protocol, .trade, .exchange, .xyz, ...)
4. Return a single line with the original name and the cleaned name separated by a comma, no spaces around the comma.
5. Format: OriginalName,cleanedname

Examples:
- Text: "Attack on Resupply.fi" -> Resupply.fi,resupply
- Text: "Sonne Finance was exploited" -> Sonne Finance,sonne
- Text: "The Onyx Protocol hack" -> Onyx Protocol,onyx
- Text: "An exploit on gradient.trade..." -> gradient.trade,gradient

Text:
"{text}"

Response:"""


def involved_tokens_prompt(text: str) -> str:
    return f"""You are a specialized AI assistant for DeFi and crypto token analysis. List the ticker symbols of all tokens directly involved in the hack or exploit described below.

Rules:
1. Ticker symbols are short, often all-caps or prefixed abbreviations (ETH, WBTC, CRV, wstETH).
2. Only tokens that were stolen, manipulated or used as part of the exploit.
3. No protocol names (Sonne, Onyx), currency symbols ($, €) or unrelated acronyms.
4. Return the tickers as one comma-separated string without spaces: TICKER1,TICKER2
5. If no token ticker is involved, return exactly "{NO_TOKENS}".

Examples:
- Text: "A new wstUSR market was deployed which used an empty crvUSD Curve Vault... an address exploited the new market to drain 9.3 million $."
  Response: wstUSR,crvUSD
- Text: "The attacker manipulated the price oracle for the FTM token on the Geist Finance protocol."
  Response: FTM
- Text: "A vulnerability was found in a lending protocol. The whitehat notified the team and no funds were lost."
  Response: {NO_TOKENS}

Text:
"{text}"

Response:"""

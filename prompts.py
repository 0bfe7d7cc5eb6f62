class PROMPTS:
    PRINTABILITY_ANALYSIS = """Judge whether this logo can be 3D printed as a flat inlay on a keychain blank.

The image has already been cropped and centered; transparent pixels are not printed.

**PRINT CONSTRAINTS:**
- Printable logo size: {min_scale:g}mm to {max_scale:g}mm along its longest side
- Minimum printable line / gap width: about 0.8mm at the chosen size
- Multi-color printing supports at most 4 filament colors
- Photographic gradients are flattened to solid color regions

**WHAT TO DECIDE:**
1. PRINTABLE: false only if the design cannot be reproduced at any allowed size
   (hair-thin details everywhere, unreadable text, photo with no clear shapes, offensive content).
2. RECOMMENDED SCALE: the size in mm, within the allowed range, that keeps the
   finest details above the minimum width while filling the blank well.
3. COLORS: the filament colors needed, most dominant first, as hex codes (#RRGGBB).
4. PRICE: estimated retail price in USD for one keychain (base price 12.00,
   add 2.00 per extra color, add 3.00 for complex detail).
5. REASONING: one or two plain sentences the customer will read.

Use the judge_manufacturability function to return structured data."""
